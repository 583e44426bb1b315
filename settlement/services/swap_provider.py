import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

import httpx

from settlement.errors import SwapProviderError

logger = logging.getLogger(__name__)


class SwapStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QuoteRequest:
    chain: str
    from_token: str
    to_token: str
    amount_base_units: int
    wallet_address: str
    slippage: float = 1.0


@dataclass
class SwapQuote:
    provider: str
    from_token: str
    to_token: str
    from_amount_base_units: int
    to_amount_base_units: int
    route: list[str] = field(default_factory=list)
    raw: dict = field(default_factory=dict)


@dataclass
class SwapOrder:
    order_id: str
    provider: str
    status: SwapStatus = SwapStatus.PENDING
    tx_hash: str | None = None
    estimated_output_base_units: int | None = None


@dataclass
class SwapStatusResult:
    order_id: str
    status: SwapStatus
    tx_hash: str | None = None
    filled_amount_base_units: int | None = None
    reason: str | None = None


class SwapProvider(ABC):
    """One external liquidity venue. Amounts cross this boundary as integer base units."""

    name = "base"

    @abstractmethod
    def get_quote(self, request: QuoteRequest) -> SwapQuote:
        raise NotImplementedError

    @abstractmethod
    def execute_swap(self, request: QuoteRequest) -> SwapOrder:
        raise NotImplementedError

    @abstractmethod
    def get_swap_status(self, order_id: str) -> SwapStatusResult:
        raise NotImplementedError

    @abstractmethod
    def is_configured(self) -> bool:
        raise NotImplementedError

    def get_provider_name(self) -> str:
        return self.name

    def close(self) -> None:
        pass


class HttpSwapProvider(SwapProvider):
    """Shared httpx plumbing for REST-based venues."""

    def __init__(self, base_url: str, headers: dict, timeout_sec: int = 20, transport: httpx.BaseTransport | None = None) -> None:
        self.client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout_sec, transport=transport)

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise SwapProviderError(self.name, f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            detail = response.text
            try:
                payload = response.json()
                if isinstance(payload, dict):
                    detail = payload.get("description") or payload.get("message") or payload.get("name") or detail
            except ValueError:
                pass
            raise SwapProviderError(self.name, f"{method} {path} returned {response.status_code}: {detail}", response.status_code)
        if not response.content:
            return {}
        return response.json()
