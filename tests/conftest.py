from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from settlement.config import Settings
from settlement.context import AppContext
from settlement.db import create_db_engine
from settlement.jobs.worker_pool import WorkerPool
from settlement.services.accounts import AccountService
from settlement.services.chain_client import TransferEvent
from settlement.services.monitoring import Alerter, QueueMonitor
from settlement.services.swap_provider import (
    QuoteRequest,
    SwapOrder,
    SwapProvider,
    SwapQuote,
    SwapStatus,
    SwapStatusResult,
)

USER_ID = "alice"
USER_ADDRESS = "0x" + "11" * 20
SENDER = "0x" + "22" * 20


class Clock:
    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + dt.timedelta(seconds=seconds)


class FakeChainClient:
    def __init__(self, chain: str = "base", latest_block: int = 1000) -> None:
        self.chain = chain
        self.latest_block = latest_block
        self.events: list[TransferEvent] = []
        self.receipt_blocks: dict[str, int] = {}

    def add_transfer(self, tx_id: str, amount, to_address: str = USER_ADDRESS, log_index: int = 0, block: int | None = None):
        block = self.latest_block if block is None else block
        event = TransferEvent(
            tx_id=tx_id,
            log_index=log_index,
            from_address=SENDER,
            to_address=to_address,
            amount=Decimal(str(amount)),
            block_number=block,
        )
        self.events.append(event)
        self.receipt_blocks[tx_id.lower()] = block
        return event

    def get_latest_block(self) -> int:
        return self.latest_block

    def get_transfer_events(self, token_address, to_address, from_block, to_block, decimals=6):
        return [
            event
            for event in self.events
            if event.to_address.lower() == to_address.lower() and from_block <= event.block_number <= to_block
        ]

    def get_confirmation_depth(self, tx_id: str) -> int:
        block = self.receipt_blocks.get(tx_id.lower())
        if block is None:
            return 0
        return max(0, self.latest_block - block + 1)


class FakeChainClients:
    def __init__(self, *clients: FakeChainClient) -> None:
        self.clients = {client.chain: client for client in clients}

    def supports(self, chain: str) -> bool:
        return chain.lower() in self.clients

    def get(self, chain: str) -> FakeChainClient:
        return self.clients[chain.lower()]


class FakeSwapProvider(SwapProvider):
    name = "fake"

    def __init__(self) -> None:
        self.configured = True
        self.orders: list[QuoteRequest] = []
        self.statuses: dict[str, SwapStatusResult] = {}
        self.execute_error: Exception | None = None
        # raised after the venue has accepted the order
        self.error_after_order: Exception | None = None
        self.rate = 1

    def get_quote(self, request: QuoteRequest) -> SwapQuote:
        return SwapQuote(
            provider=self.name,
            from_token=request.from_token,
            to_token=request.to_token,
            from_amount_base_units=request.amount_base_units,
            to_amount_base_units=request.amount_base_units * self.rate,
            route=[self.name],
        )

    def execute_swap(self, request: QuoteRequest) -> SwapOrder:
        if self.execute_error is not None:
            raise self.execute_error
        self.orders.append(request)
        if self.error_after_order is not None:
            raise self.error_after_order
        order_id = f"order-{len(self.orders)}"
        return SwapOrder(order_id=order_id, provider=self.name, status=SwapStatus.PENDING)

    def get_swap_status(self, order_id: str) -> SwapStatusResult:
        return self.statuses.get(order_id, SwapStatusResult(order_id=order_id, status=SwapStatus.PENDING))

    def is_configured(self) -> bool:
        return self.configured


@pytest.fixture()
def clock() -> Clock:
    return Clock(dt.datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture()
def chain() -> FakeChainClient:
    return FakeChainClient("base")


@pytest.fixture()
def provider() -> FakeSwapProvider:
    return FakeSwapProvider()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        chain_rpc_urls={"base": "http://rpc.invalid"},
        default_chain="base",
        swap_network="ethereum",
        required_confirmations=2,
        deposit_session_ttl_min=60,
        deposit_amount_tolerance=Decimal("0.05"),
        deposit_confirm_grace_sec=0,
        min_deposit_amount=Decimal("1"),
        job_max_attempts=3,
        job_backoff_base_sec=2.0,
        onchain_poll_interval_sec=30,
        swap_poll_interval_sec=30,
        swap_poll_limit=3,
        alert_webhook_url="",
        alert_failure_threshold=2,
        alert_stalled_threshold=1,
        rebalance_drift_threshold=Decimal("5"),
        min_rebalance_usd=Decimal("1"),
        create_tables=True,
        workers_in_api=False,
    )


@pytest.fixture()
def ctx(settings, clock, chain, provider) -> AppContext:
    context = AppContext.from_settings(
        settings,
        engine=create_db_engine("sqlite://"),
        clock=clock,
        chain_clients=FakeChainClients(chain),
        swap_provider=provider,
        monitor=QueueMonitor(Alerter(), failure_threshold=2, stalled_threshold=1),
    )
    context.open()
    yield context
    context.close()


@pytest.fixture()
def db(ctx):
    with ctx.session_factory() as session:
        yield session


@pytest.fixture()
def user(ctx):
    with ctx.session_factory() as session:
        AccountService(session).open_account(USER_ID, USER_ADDRESS, "base")
    return USER_ID


@pytest.fixture()
def pool(ctx) -> WorkerPool:
    return WorkerPool(ctx, poll_interval_sec=0.01, sweep_interval_sec=0.01)
