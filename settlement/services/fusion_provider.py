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
    "filled": SwapStatus.COMPLETED,
    "executed": SwapStatus.COMPLETED,
    "expired": SwapStatus.FAILED,
    "cancelled": SwapStatus.FAILED,
    "invalid": SwapStatus.FAILED,
    "partially-filled": SwapStatus.PROCESSING,
    "partial": SwapStatus.PROCESSING,
    "pending": SwapStatus.PENDING,
}


class FusionProvider(HttpSwapProvider):
    """1inch Fusion intent auction. Orders are signed off-chain and filled by resolvers."""

    name = "fusion"

    def __init__(
        self,
        api_key: str,
        private_key: str,
        network: str = "ethereum",
        api_base: str = "https://api.1inch.dev",
        timeout_sec: int = 20,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(api_base, {"Authorization": f"Bearer {api_key}"}, timeout_sec, transport)
        self.api_key = api_key
        self.network = network
        self.chain_id = CHAIN_IDS.get(network, 1)
        self.account = Web3().eth.account.from_key(private_key) if private_key else None

    def is_configured(self) -> bool:
        return bool(self.api_key) and self.account is not None

    def get_provider_name(self) -> str:
        return "1inch Fusion"

    def _quote_params(self, request: QuoteRequest) -> dict:
        return {
            "fromTokenAddress": request.from_token,
            "toTokenAddress": request.to_token,
            "amount": str(request.amount_base_units),
            "walletAddress": request.wallet_address,
            "enableEstimate": "true",
        }

    def get_quote(self, request: QuoteRequest) -> SwapQuote:
        quote = self._request(
            "GET", f"/fusion/quoter/v2.0/{self.chain_id}/quote/receive", params=self._quote_params(request)
        )
        return SwapQuote(
            provider=self.name,
            from_token=request.from_token,
            to_token=request.to_token,
            from_amount_base_units=int(quote.get("fromTokenAmount") or request.amount_base_units),
            to_amount_base_units=int(quote.get("toTokenAmount") or 0),
            route=[quote.get("recommended_preset", "fast")],
            raw=quote,
        )

    def execute_swap(self, request: QuoteRequest) -> SwapOrder:
        if not self.is_configured():
            raise SwapProviderError(self.name, "ONEINCH_API_KEY and SWAP_WALLET_PRIVATE_KEY must be set", 400)
        quote = self.get_quote(request)
        built = self._request(
            "POST",
            f"/fusion/quoter/v2.0/{self.chain_id}/quote/build",
            params=self._quote_params(request),
            json=quote.raw,
        )
        typed_data = built["typedData"]
        signed = self.account.sign_typed_data(full_message=typed_data)
        self._request(
            "POST",
            f"/fusion/relayer/v2.0/{self.chain_id}/order/submit",
            json={
                "order": typed_data["message"],
                "signature": Web3.to_hex(signed.signature),
                "extension": built.get("extension", "0x"),
                "quoteId": quote.raw.get("quoteId"),
            },
        )
        order_hash = built["orderHash"]
        logger.info("Fusion order submitted %s", order_hash)
        return SwapOrder(
            order_id=order_hash,
            provider=self.name,
            estimated_output_base_units=quote.to_amount_base_units or None,
        )

    def get_swap_status(self, order_id: str) -> SwapStatusResult:
        try:
            order = self._request("GET", f"/fusion/orders/v2.0/{self.chain_id}/order/status/{order_id}")
        except SwapProviderError as exc:
            if exc.status_code == 404:
                return SwapStatusResult(order_id=order_id, status=SwapStatus.PENDING)
            raise
        raw_status = str(order.get("status", "")).lower()
        mapped = STATUS_MAP.get(raw_status, SwapStatus.PENDING)
        fills = order.get("fills") or []
        filled = sum(int(fill.get("filledAuctionTakerAmount") or 0) for fill in fills)
        return SwapStatusResult(
            order_id=order_id,
            status=mapped,
            tx_hash=fills[-1].get("txHash") if fills else None,
            filled_amount_base_units=filled or None,
            reason=f"order {raw_status}" if mapped == SwapStatus.FAILED else None,
        )
