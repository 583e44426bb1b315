import logging

import httpx
from web3 import Web3

from settlement.errors import SwapProviderError
from settlement.services.catalog import CHAIN_IDS
from settlement.services.swap_provider import (
    HttpSwapProvider,
    QuoteRequest,
    SwapOrder,
    SwapQuote,
    SwapStatus,
    SwapStatusResult,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "succeeded": SwapStatus.COMPLETED,
    "confirmed": SwapStatus.COMPLETED,
    "failed": SwapStatus.FAILED,
    "submitted": SwapStatus.PROCESSING,
    "pending": SwapStatus.PENDING,
}


def signature_object(signed) -> dict:
    return {
        "v": signed.v,
        "r": "0x" + signed.r.to_bytes(32, "big").hex(),
        "s": "0x" + signed.s.to_bytes(32, "big").hex(),
        "signatureType": 2,
    }


class ZeroExGaslessProvider(HttpSwapProvider):
    """0x gasless API: the taker signs EIP-712 payloads and 0x relays the trade."""

    name = "zerox"

    def __init__(
        self,
        api_key: str,
        private_key: str,
        network: str = "ethereum",
        api_base: str = "https://api.0x.org",
        timeout_sec: int = 20,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(
            api_base,
            {"0x-api-key": api_key, "0x-version": "v2", "Content-Type": "application/json"},
            timeout_sec,
            transport,
        )
        self.api_key = api_key
        self.network = network
        self.chain_id = CHAIN_IDS.get(network, 1)
        self.account = Web3().eth.account.from_key(private_key) if private_key else None

    def is_configured(self) -> bool:
        return bool(self.api_key) and self.account is not None

    def get_provider_name(self) -> str:
        return "0x Gasless API"

    def _fetch_quote(self, request: QuoteRequest) -> dict:
        quote = self._request(
            "GET",
            "/gasless/quote",
            params={
                "chainId": self.chain_id,
                "sellToken": request.from_token,
                "buyToken": request.to_token,
                "sellAmount": str(request.amount_base_units),
                "taker": request.wallet_address,
                "slippageBps": int(request.slippage * 100),
            },
        )
        if not quote.get("liquidityAvailable", False):
            raise SwapProviderError(self.name, "No liquidity available for this swap", 422)
        return quote

    def get_quote(self, request: QuoteRequest) -> SwapQuote:
        quote = self._fetch_quote(request)
        fills = (quote.get("route") or {}).get("fills") or []
        return SwapQuote(
            provider=self.name,
            from_token=request.from_token,
            to_token=request.to_token,
            from_amount_base_units=int(quote.get("sellAmount") or request.amount_base_units),
            to_amount_base_units=int(quote.get("buyAmount") or 0),
            route=[fill.get("source", "unknown") for fill in fills],
            raw=quote,
        )

    def execute_swap(self, request: QuoteRequest) -> SwapOrder:
        if not self.is_configured():
            raise SwapProviderError(self.name, "ZEROX_API_KEY and SWAP_WALLET_PRIVATE_KEY must be set", 400)
        quote = self._fetch_quote(request)
        trade = quote["trade"]
        payload = {
            "trade": {
                "type": trade["type"],
                "eip712": trade["eip712"],
                "signature": signature_object(self.account.sign_typed_data(full_message=trade["eip712"])),
            },
            "chainId": self.chain_id,
        }
        approval = quote.get("approval")
        if approval and (quote.get("issues") or {}).get("allowance"):
            payload["approval"] = {
                "type": approval["type"],
                "eip712": approval["eip712"],
                "signature": signature_object(self.account.sign_typed_data(full_message=approval["eip712"])),
            }
        submitted = self._request("POST", "/gasless/submit", json=payload)
        trade_hash = submitted.get("tradeHash")
        if not trade_hash:
            raise SwapProviderError(self.name, f"Submit response missing tradeHash: {submitted}")
        logger.info("0x trade submitted %s (zid=%s)", trade_hash, submitted.get("zid"))
        return SwapOrder(
            order_id=trade_hash,
            provider=self.name,
            estimated_output_base_units=int(quote.get("buyAmount") or 0) or None,
        )

    def get_swap_status(self, order_id: str) -> SwapStatusResult:
        try:
            status = self._request("GET", f"/gasless/status/{order_id}", params={"chainId": self.chain_id})
        except SwapProviderError as exc:
            if exc.status_code == 404:
                return SwapStatusResult(order_id=order_id, status=SwapStatus.PENDING)
            raise
        mapped = STATUS_MAP.get(str(status.get("status", "")).lower(), SwapStatus.PENDING)
        transactions = status.get("transactions") or []
        tx_hash = transactions[0].get("hash") if transactions and mapped != SwapStatus.PENDING else None
        return SwapStatusResult(
            order_id=order_id,
            status=mapped,
            tx_hash=tx_hash,
            reason=status.get("reason") if mapped == SwapStatus.FAILED else None,
        )
