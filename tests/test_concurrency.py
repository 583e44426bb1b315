from __future__ import annotations

import threading
import time
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import USER_ADDRESS, FakeChainClients
from settlement.context import AppContext
from settlement.db import create_db_engine
from settlement.errors import TerminalError, ValidationError
from settlement.jobs.processors import swap_execution
from settlement.jobs.queue import COMPLETED, ClaimedJob, TaskOptions
from settlement.jobs.tasks import DEPOSIT_COMPLETION, SWAP_EXECUTION, Task
from settlement.jobs.worker_pool import WorkerPool
from settlement.models import DepositSession, Portfolio, ProcessedEvent, Transaction
from settlement.services.accounts import AccountService
from settlement.services.chain_client import TransferEvent
from settlement.services.dedup_ledger import EventLedger
from settlement.services.deposit_sessions import CONFIRMED, EXPIRED, FAILED, RECEIVED, DepositSessionStore
from settlement.services.deposits import DepositService
from settlement.services.monitoring import Alerter, QueueMonitor
from settlement.services.reconciler import BalanceReconciler
from settlement.services.swaps import SwapService
from settlement.services.transactions import PROCESSING, OnchainDepositParams, TransactionStore

BOB_ADDRESS = "0x" + "33" * 20


@pytest.fixture()
def file_ctx(settings, clock, chain, provider, tmp_path) -> AppContext:
    context = AppContext.from_settings(
        settings,
        engine=create_db_engine(f"sqlite:///{tmp_path / 'settlement.db'}"),
        clock=clock,
        chain_clients=FakeChainClients(chain),
        swap_provider=provider,
        monitor=QueueMonitor(Alerter(), failure_threshold=2, stalled_threshold=1),
    )
    context.open()
    yield context
    context.close()


def _race(workers):
    """Start every callable at the same moment in its own thread; return their results in order."""
    barrier = threading.Barrier(len(workers))
    results = [None] * len(workers)
    errors = []

    def run(index, work):
        barrier.wait()
        try:
            results[index] = work()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(index, work)) for index, work in enumerate(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert errors == []
    return results


def _count(ctx, model) -> int:
    with ctx.session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def _wait_until(condition, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def test_concurrent_claims_of_one_event_have_one_winner(file_ctx):
    def claim():
        with file_ctx.session_factory() as db:
            won = EventLedger(db).claim("base", "0xRACE", 0)
            db.commit()
            return won

    results = _race([claim] * 8)
    assert sorted(results) == [False] * 7 + [True]
    assert _count(file_ctx, ProcessedEvent) == 1


def _awaiting_session(ctx) -> str:
    with ctx.session_factory() as db:
        session = DepositSessionStore(db).create(
            user_id="alice",
            chain="base",
            token_symbol="USDC",
            token_address="0x" + "aa" * 20,
            deposit_address=USER_ADDRESS,
            created_at_block=1000,
            min_amount=Decimal("1"),
        )
        db.commit()
        return session.id


def _transition(ctx, move):
    def work():
        with ctx.session_factory() as db:
            moved = move(DepositSessionStore(db))
            db.commit()
            return moved

    return work


def _event(index: int) -> TransferEvent:
    return TransferEvent(
        tx_id=f"0xevt{index}",
        log_index=0,
        from_address="0x" + "22" * 20,
        to_address=USER_ADDRESS,
        amount=Decimal("10"),
        block_number=1001,
    )


def test_concurrent_session_transitions_never_move_backward(file_ctx):
    session_id = _awaiting_session(file_ctx)

    binds = [_transition(file_ctx, lambda store, i=i: store.bind_match(session_id, _event(i))) for i in range(4)]
    expiries = [_transition(file_ctx, lambda store: store.mark_expired(session_id))] * 2
    results = _race(binds + expiries)
    assert results.count(True) == 1

    with file_ctx.session_factory() as db:
        session = db.get(DepositSession, session_id)
    if results.index(True) < len(binds):
        assert session.status == RECEIVED
        assert session.matched_tx_id == f"0xevt{results.index(True)}"
        finishers = [
            _transition(file_ctx, lambda store: store.mark_confirmed(session_id, "tx-1")),
            _transition(file_ctx, lambda store: store.mark_expired(session_id)),
            _transition(file_ctx, lambda store: store.mark_failed(session_id, "timeout")),
        ] * 2
        outcomes = _race(finishers)
        assert outcomes.count(True) == 1
        winner = [CONFIRMED, EXPIRED, FAILED][outcomes.index(True) % 3]
    else:
        assert session.status == EXPIRED
        winner = EXPIRED

    # once terminal, every further transition is refused
    late = [
        _transition(file_ctx, lambda store: store.bind_match(session_id, _event(9))),
        _transition(file_ctx, lambda store: store.mark_confirmed(session_id, "tx-2")),
        _transition(file_ctx, lambda store: store.mark_expired(session_id)),
        _transition(file_ctx, lambda store: store.mark_failed(session_id, "late")),
    ]
    assert _race(late) == [False] * 4
    with file_ctx.session_factory() as db:
        assert db.get(DepositSession, session_id).status == winner


def _slow_task(ctx, name: str, seconds: float, running: list, release: threading.Event) -> TaskOptions:
    options = TaskOptions(name, concurrency=3)

    def handler(context, job):
        running.append(job.job_key)
        release.wait(seconds)

    ctx.handlers = {name: Task(options, handler)}
    for index in range(3):
        ctx.queue.enqueue(options, str(index), {})
    return options


def test_stop_gives_all_jobs_one_shared_grace_period(file_ctx):
    running: list[str] = []
    release = threading.Event()
    _slow_task(file_ctx, "slow", 5, running, release)
    pool = WorkerPool(file_ctx, poll_interval_sec=0.01, sweep_interval_sec=60)
    pool.start()
    try:
        assert _wait_until(lambda: len(running) == 3)
        started = time.monotonic()
        pool.stop(grace_sec=0.5)
        elapsed = time.monotonic() - started
    finally:
        release.set()
    assert 0.4 <= elapsed < 1.0
    # jobs still finish their own leases once they return
    assert _wait_until(lambda: file_ctx.queue.counts()["slow"][COMPLETED] == 3)


def test_stop_drains_jobs_that_finish_in_time(file_ctx):
    running: list[str] = []
    release = threading.Event()
    _slow_task(file_ctx, "quick", 0.2, running, release)
    pool = WorkerPool(file_ctx, poll_interval_sec=0.01, sweep_interval_sec=60)
    pool.start()
    assert _wait_until(lambda: len(running) == 3)
    started = time.monotonic()
    pool.stop(grace_sec=5)
    assert time.monotonic() - started < 5
    assert file_ctx.queue.counts()["quick"][COMPLETED] == 3
    assert file_ctx.queue.claim("quick") == []


def _open(ctx, user_id: str, address: str) -> None:
    with ctx.session_factory() as db:
        AccountService(db).open_account(user_id, address, "base")


def _cash(ctx, user_id: str) -> Decimal:
    with ctx.session_factory() as db:
        portfolio = db.execute(select(Portfolio).where(Portfolio.user_id == user_id)).scalar_one()
        return Decimal(portfolio.cash_value_usd)


def test_direct_deposit_racing_a_session_settles_the_event_once(file_ctx, chain):
    _open(file_ctx, "alice", USER_ADDRESS)
    _open(file_ctx, "bob", BOB_ADDRESS)
    with file_ctx.session_factory() as db:
        session_id = DepositService(db, file_ctx).create_deposit_intent("bob", expected_amount="100").id
        event = TransferEvent(
            tx_id="0xEVT", log_index=0, from_address="0x" + "22" * 20, to_address=BOB_ADDRESS,
            amount=Decimal("100"), block_number=1001,
        )
        assert DepositSessionStore(db).bind_match(session_id, event)
        db.commit()

    def report():
        with file_ctx.session_factory() as db:
            try:
                return DepositService(db, file_ctx).create_onchain_deposit(
                    OnchainDepositParams(
                        user_id="alice", chain="base", tx_id="0xEVT", log_index=0, token_symbol="USDC", amount="100"
                    )
                ).id
            except ValidationError:
                return None

    def settle():
        with file_ctx.session_factory() as db:
            return DepositService(db, file_ctx).settle_onchain_deposit(session_id)

    direct_id, outcome = _race([report, settle])
    WorkerPool(file_ctx).run_once(DEPOSIT_COMPLETION)

    assert _count(file_ctx, ProcessedEvent) == 1
    assert sorted([_cash(file_ctx, "alice"), _cash(file_ctx, "bob")]) == [Decimal("0"), Decimal("100")]
    with file_ctx.session_factory() as db:
        session = db.get(DepositSession, session_id)
        direct = db.get(Transaction, direct_id) if direct_id else None
    if outcome.confirmed:
        assert session.status == CONFIRMED
        assert _cash(file_ctx, "bob") == Decimal("100")
        assert direct is None or direct.status == "failed"
    else:
        assert outcome.race_lost
        assert session.status == RECEIVED
        assert session.review_reason is not None
        assert direct.status == "completed"


def test_duplicate_swap_deliveries_place_one_order(file_ctx, provider):
    _open(file_ctx, "alice", USER_ADDRESS)
    with file_ctx.session_factory() as db:
        funding = TransactionStore(db).create_onchain_deposit(
            OnchainDepositParams(user_id="alice", chain="base", tx_id="0xfund", log_index=0, token_symbol="USDC", amount=Decimal("100"))
        )
        db.commit()
        BalanceReconciler(db, file_ctx.catalog).apply_completed_transfer("alice", "USDC", "USDC", "100", "100", funding.id)
        swap_id = SwapService(db, file_ctx).execute_swap("alice", "USDC", "USDM", "50").id

    def deliver():
        job = ClaimedJob(
            id=0,
            job_key=f"{SWAP_EXECUTION}:{swap_id}",
            task=SWAP_EXECUTION,
            payload={"transaction_id": swap_id},
            attempts=1,
            max_attempts=3,
            backoff_base_sec=2.0,
            polls=0,
            lease_token="delivery",
            repeat_every_sec=None,
            repeat_limit=None,
            deadline=None,
        )
        try:
            swap_execution.process(file_ctx, job)
            return "ran"
        except TerminalError:
            # a delivery that sees the claim before the order id is left for review
            return "held"

    _race([deliver] * 4)
    assert len(provider.orders) == 1
    with file_ctx.session_factory() as db:
        swap = db.get(Transaction, swap_id)
    assert swap.status == PROCESSING
    assert swap.order_id == "order-1"
