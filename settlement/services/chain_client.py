import logging
from dataclasses import dataclass
from decimal import Decimal

from eth_abi import decode
from web3 import Web3
from web3.exceptions import TransactionNotFound

from settlement.errors import TransientError
from settlement.money import from_base_units

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


@dataclass
class TransferEvent:
    tx_id: str
    log_index: int
    from_address: str
    to_address: str
    amount: Decimal
    block_number: int


def _topic_for_address(address: str) -> str:
    return "0x" + "0" * 24 + address.lower().replace("0x", "")


def _address_from_topic(topic) -> str:
    raw = topic.hex() if hasattr(topic, "hex") else str(topic)
    raw = raw.replace("0x", "")
    return Web3.to_checksum_address("0x" + raw[-40:])


def _hex(value) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else "0x" + text


class ChainClient:
    """JSON-RPC access to one chain. Every call is a blocking network hop with a timeout."""

    def __init__(self, chain: str, rpc_url: str, timeout_sec: int = 20, scan_chunk: int = 2000) -> None:
        self.chain = chain
        self.scan_chunk = max(1, scan_chunk)
        self.web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_sec}))

    def get_latest_block(self) -> int:
        try:
            return int(self.web3.eth.block_number)
        except Exception as exc:
            raise TransientError(f"{self.chain} block number unavailable: {exc}") from exc

    def get_transfer_events(
        self, token_address: str, to_address: str, from_block: int, to_block: int, decimals: int = 6
    ) -> list[TransferEvent]:
        events: list[TransferEvent] = []
        start = from_block
        while start <= to_block:
            end = min(start + self.scan_chunk - 1, to_block)
            try:
                logs = self.web3.eth.get_logs(
                    {
                        "fromBlock": start,
                        "toBlock": end,
                        "address": Web3.to_checksum_address(token_address),
                        "topics": [TRANSFER_TOPIC, None, _topic_for_address(to_address)],
                    }
                )
            except Exception as exc:
                raise TransientError(f"{self.chain} get_logs {start}-{end} failed: {exc}") from exc
            for log in logs:
                (raw_amount,) = decode(["uint256"], bytes(log["data"]))
                events.append(
                    TransferEvent(
                        tx_id=_hex(log["transactionHash"]).lower(),
                        log_index=int(log["logIndex"]),
                        from_address=_address_from_topic(log["topics"][1]),
                        to_address=_address_from_topic(log["topics"][2]),
                        amount=from_base_units(raw_amount, decimals),
                        block_number=int(log["blockNumber"]),
                    )
                )
            start = end + 1
        events.sort(key=lambda event: (event.block_number, event.log_index))
        logger.debug("Found %s transfers to %s on %s", len(events), to_address, self.chain)
        return events

    def get_confirmation_depth(self, tx_id: str) -> int:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_id)
        except TransactionNotFound:
            return 0
        except Exception as exc:
            raise TransientError(f"{self.chain} receipt lookup failed: {exc}") from exc
        if receipt is None or receipt.get("blockNumber") is None:
            return 0
        return max(0, self.get_latest_block() - int(receipt["blockNumber"]) + 1)


class ChainClients:
    def __init__(self, rpc_urls: dict[str, str], timeout_sec: int = 20, scan_chunk: int = 2000) -> None:
        self.rpc_urls = rpc_urls
        self.timeout_sec = timeout_sec
        self.scan_chunk = scan_chunk
        self._clients: dict[str, ChainClient] = {}

    def supports(self, chain: str) -> bool:
        return chain.lower() in self.rpc_urls

    def get(self, chain: str) -> ChainClient:
        chain = chain.lower()
        if chain not in self._clients:
            if chain not in self.rpc_urls:
                raise RuntimeError(f"No RPC URL configured for chain {chain} (CHAIN_RPC_URLS)")
            self._clients[chain] = ChainClient(chain, self.rpc_urls[chain], self.timeout_sec, self.scan_chunk)
        return self._clients[chain]
