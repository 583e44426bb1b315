import logging

import httpx
from web3 import Web3
from web3.exceptions import TransactionNotFound

from settlement.errors import SwapProviderError, TransientError
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

ERC20_ALLOWANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    }
]


class ClassicSwapProvider(HttpSwapProvider):
    """1inch aggregation router. The service wallet signs and pays gas for the swap itself."""

    name = "classic"

    def __init__(
        self,
        api_key: str,
        private_key: str,
        node_url: str,
        network: str = "base",
        api_base: str = "https://api.1inch.dev",
        timeout_sec: int = 20,
        transport: httpx.BaseTransport | None = None,
        web3: Web3 | None = None,
    ) -> None:
        self.chain_id = CHAIN_IDS.get(network, 8453)
        super().__init__(
            f"{api_base.rstrip('/')}/swap/v6.1/{self.chain_id}",
            {"Authorization": f"Bearer {api_key}"},
            timeout_sec,
            transport,
        )
        self.api_key = api_key
        self.private_key = private_key
        self.network = network
        if web3 is None and node_url:
            web3 = Web3(Web3.HTTPProvider(node_url, request_kwargs={"timeout": timeout_sec}))
        self.web3 = web3
        self.account = self.web3.eth.account.from_key(private_key) if self.web3 and private_key else None

    def is_configured(self) -> bool:
        return bool(self.api_key) and self.account is not None

    def get_provider_name(self) -> str:
        return "1inch Classic Swap (v6.1)"

    def get_quote(self, request: QuoteRequest) -> SwapQuote:
        data = self._request(
            "GET",
            "/quote",
            params={
                "src": request.from_token,
                "dst": request.to_token,
                "amount": str(request.amount_base_units),
                "includeGas": "true",
            },
        )
        protocols = data.get("protocols") or []
        route = [hop[0].get("name", "unknown") for hop in protocols[0]] if protocols and protocols[0] else []
        return SwapQuote(
            provider=self.name,
            from_token=request.from_token,
            to_token=request.to_token,
            from_amount_base_units=request.amount_base_units,
            to_amount_base_units=int(data.get("dstAmount") or data.get("toAmount") or 0),
            route=route,
            raw=data,
        )

    def _send(self, tx: dict) -> str:
        nonce = self.web3.eth.get_transaction_count(self.account.address)
        txn = {
            "to": Web3.to_checksum_address(tx["to"]),
            "value": int(tx.get("value") or 0),
            "data": tx["data"],
            "nonce": nonce,
            "gas": int(tx.get("gas") or 300000),
            "gasPrice": int(tx.get("gasPrice") or self.web3.eth.gas_price),
            "chainId": self.chain_id,
        }
        signed = self.account.sign_transaction(txn)
        return Web3.to_hex(self.web3.eth.send_raw_transaction(signed.raw_transaction))

    def _ensure_allowance(self, token: str, amount: int) -> None:
        spender = self._request("GET", "/approve/spender")["address"]
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ALLOWANCE_ABI)
        allowance = contract.functions.allowance(self.account.address, Web3.to_checksum_address(spender)).call()
        if int(allowance) >= amount:
            return
        approve_tx = self._request(
            "GET", "/approve/transaction", params={"tokenAddress": token, "amount": str(amount)}
        )
        tx_hash = self._send(approve_tx)
        logger.info("Approval %s sent for %s", tx_hash, token)
        self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)

    def execute_swap(self, request: QuoteRequest) -> SwapOrder:
        if not self.is_configured():
            raise SwapProviderError(self.name, "ONEINCH_API_KEY, NODE_URL and SWAP_WALLET_PRIVATE_KEY must be set", 400)
        self._ensure_allowance(request.from_token, request.amount_base_units)
        data = self._request(
            "GET",
            "/swap",
            params={
                "src": request.from_token,
                "dst": request.to_token,
                "amount": str(request.amount_base_units),
                "from": self.account.address,
                "slippage": str(request.slippage),
                "disableEstimate": "false",
            },
        )
        tx_hash = self._send(data["tx"])
        logger.info("Classic swap broadcast %s", tx_hash)
        return SwapOrder(
            order_id=tx_hash,
            provider=self.name,
            tx_hash=tx_hash,
            estimated_output_base_units=int(data.get("dstAmount") or 0) or None,
        )

    def get_swap_status(self, order_id: str) -> SwapStatusResult:
        try:
            receipt = self.web3.eth.get_transaction_receipt(order_id)
        except TransactionNotFound:
            return SwapStatusResult(order_id=order_id, status=SwapStatus.PENDING, tx_hash=order_id)
        except Exception as exc:
            raise TransientError(f"receipt lookup for {order_id} failed: {exc}") from exc
        if receipt is None:
            return SwapStatusResult(order_id=order_id, status=SwapStatus.PENDING, tx_hash=order_id)
        if int(receipt["status"]) == 1:
            return SwapStatusResult(order_id=order_id, status=SwapStatus.COMPLETED, tx_hash=order_id)
        return SwapStatusResult(
            order_id=order_id,
            status=SwapStatus.FAILED,
            tx_hash=order_id,
            reason="Transaction reverted on-chain",
        )
