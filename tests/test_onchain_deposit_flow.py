from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from settlement.errors import ValidationError
from settlement.jobs.tasks import DEPOSIT_COMPLETION, ONCHAIN_DEPOSIT_CONFIRMATION
from settlement.models import DepositSession, Portfolio, ProcessedEvent, Transaction
from settlement.services.deposit_sessions import AWAITING, CONFIRMED, EXPIRED, FAILED, RECEIVED
from settlement.services.accounts import AccountService
from settlement.services.dedup_ledger import EventLedger
from settlement.services.deposits import DepositService
from settlement.services.transactions import COMPLETED as TX_COMPLETED
from settlement.services.transactions import FAILED as TX_FAILED
from settlement.services.transactions import PROCESSING, OnchainDepositParams

BOB_ADDRESS = "0x" + "33" * 20


def _intent(ctx, user_id, **kwargs) -> str:
    with ctx.session_factory() as db:
        return DepositService(db, ctx).create_deposit_intent(user_id, **kwargs).id


def _session(ctx, session_id) -> DepositSession:
    with ctx.session_factory() as db:
        return db.get(DepositSession, session_id)


def _count(ctx, model) -> int:
    with ctx.session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_intent_derives_bounds_from_expected_amount(ctx, user, chain):
    session_id = _intent(ctx, user, expected_amount="100")
    session = _session(ctx, session_id)
    assert session.min_amount == Decimal("95")
    assert session.max_amount == Decimal("105")
    assert session.created_at_block == chain.latest_block
    assert session.token_symbol == "USDC"
    assert session.status == AWAITING
    job = ctx.queue.get(f"{ONCHAIN_DEPOSIT_CONFIRMATION}:{session_id}")
    assert job is not None
    assert job.deadline == session.expires_at


def test_intent_rejects_unknown_chain_and_bad_bounds(ctx, user):
    with pytest.raises(ValidationError):
        _intent(ctx, user, chain="solana", expected_amount="10")
    with pytest.raises(ValidationError):
        _intent(ctx, user, min_amount="10", max_amount="5")
    assert _count(ctx, DepositSession) == 0


def test_matching_transfer_is_confirmed_once(ctx, user, chain, clock, pool):
    session_id = _intent(ctx, user, expected_amount="100")
    chain.latest_block = 1001
    chain.add_transfer("0xLOW", "94", block=1001, log_index=0)
    chain.add_transfer("0xHIGH", "106", block=1001, log_index=1)
    chain.add_transfer("0xMATCH", "100", block=1001, log_index=2)

    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["polling"]
    session = _session(ctx, session_id)
    assert session.status == RECEIVED
    assert session.matched_tx_id == "0xmatch"
    assert session.matched_log_index == 2
    assert session.confirmations == 1

    clock.advance(30)
    chain.latest_block = 1002
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["completed"]

    session = _session(ctx, session_id)
    assert session.status == CONFIRMED
    assert session.transaction_id is not None
    assert _count(ctx, Transaction) == 1
    assert _count(ctx, ProcessedEvent) == 1
    with ctx.session_factory() as db:
        tx = db.get(Transaction, session.transaction_id)
        assert tx.status == "completed"
        assert tx.tx_id == "0xmatch"
        assert tx.deposit_session_id == session_id
        portfolio = db.execute(select(Portfolio).where(Portfolio.user_id == user)).scalar_one()
        assert portfolio.cash_value_usd == Decimal("100")
        assert portfolio.total_deposited_usd == Decimal("100")

    # a repeated confirmation request is a no-op on a confirmed session
    with ctx.session_factory() as db:
        status = DepositService(db, ctx).confirm_deposit_intent(session_id, refresh=True)
    assert status.status == CONFIRMED
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == []
    assert _count(ctx, Transaction) == 1


def test_unmatched_session_expires_at_deadline(ctx, user, clock, pool):
    session_id = _intent(ctx, user, expected_amount="50")
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["polling"]
    clock.advance(61 * 60)
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["completed"]
    assert _session(ctx, session_id).status == EXPIRED


def test_sweep_expires_past_sessions_exactly_once(ctx, user, clock, pool):
    session_id = _intent(ctx, user, expected_amount="50")
    clock.advance(2 * 60 * 60)
    assert pool.sweep()["expired"] == 1
    assert pool.sweep()["expired"] == 0
    assert _session(ctx, session_id).status == EXPIRED
    # the pending confirmation job sees the terminal session and finishes quietly
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["completed"]


def test_confirmation_timeout_fails_received_session(ctx, user, chain, clock, pool):
    session_id = _intent(ctx, user, expected_amount="100")
    chain.latest_block = 1001
    chain.add_transfer("0xSLOW", "100", block=1001)
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["polling"]

    # the chain stalls; depth never reaches two before the deadline
    clock.advance(60 * 60)
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["completed"]
    session = _session(ctx, session_id)
    assert session.status == FAILED
    assert session.failure_reason == "confirmation-timeout"
    assert any(alert["kind"] == "deposit_confirmation_timeout" for alert in ctx.monitor.alerter.sent)
    assert _count(ctx, Transaction) == 0


def test_second_session_loses_the_race_and_is_flagged(ctx, user, chain, clock, pool):
    first = _intent(ctx, user, expected_amount="100")
    second = _intent(ctx, user, expected_amount="100")
    chain.latest_block = 1001
    chain.add_transfer("0xSHARED", "100", block=1001)

    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["polling", "polling"]
    clock.advance(30)
    chain.latest_block = 1005
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["completed", "completed"]

    assert _session(ctx, first).status == CONFIRMED
    loser = _session(ctx, second)
    assert loser.status == RECEIVED
    assert "already settled" in loser.review_reason
    assert _count(ctx, Transaction) == 1
    assert _count(ctx, ProcessedEvent) == 1
    with ctx.session_factory() as db:
        flagged = DepositService(db, ctx).list_for_review()
    assert [session.id for session in flagged] == [second]
    assert any(alert["kind"] == "deposit_race_lost" for alert in ctx.monitor.alerter.sent)


def test_direct_onchain_deposit_is_idempotent(ctx, user):
    params = dict(user_id=user, chain="base", tx_id="0xDIRECT", log_index=4, token_symbol="USDC", amount="12.5")
    with ctx.session_factory() as db:
        service = DepositService(db, ctx)
        first = service.create_onchain_deposit(OnchainDepositParams(**params))
        second = service.create_onchain_deposit(OnchainDepositParams(**{**params, "tx_id": "0xdirect"}))
    assert first.id == second.id
    assert _count(ctx, Transaction) == 1


def _direct(ctx, user_id, tx_id="0xDIRECT", amount="12.5", log_index=4):
    with ctx.session_factory() as db:
        return DepositService(db, ctx).create_onchain_deposit(
            OnchainDepositParams(
                user_id=user_id, chain="base", tx_id=tx_id, log_index=log_index, token_symbol="USDC", amount=amount
            )
        )


def _portfolio(ctx, user_id) -> Portfolio:
    with ctx.session_factory() as db:
        return db.execute(select(Portfolio).where(Portfolio.user_id == user_id)).scalar_one()


def _open_bob(ctx) -> str:
    with ctx.session_factory() as db:
        AccountService(db).open_account("bob", BOB_ADDRESS, "base")
    return "bob"


def test_direct_onchain_deposit_settles_through_completion_job(ctx, user, pool):
    tx = _direct(ctx, user)
    assert tx.status == PROCESSING
    assert ctx.queue.get(f"{DEPOSIT_COMPLETION}:{tx.id}").state == "waiting"

    assert pool.run_once(DEPOSIT_COMPLETION) == ["completed"]
    with ctx.session_factory() as db:
        settled = db.get(Transaction, tx.id)
        assert settled.status == TX_COMPLETED
        assert settled.settlement_reference == "0xdirect"
        assert EventLedger(db).is_consumed("base", "0xDIRECT", 4)
    assert _portfolio(ctx, user).cash_value_usd == Decimal("12.5")

    # repeating the report returns the settled deposit without crediting twice
    again = _direct(ctx, user)
    assert again.id == tx.id
    assert pool.run_once(DEPOSIT_COMPLETION) == []
    assert _portfolio(ctx, user).cash_value_usd == Decimal("12.5")


def test_direct_deposit_of_a_settled_event_is_rejected(ctx, user, chain, clock, pool):
    _intent(ctx, user, expected_amount="100")
    chain.latest_block = 1002
    chain.add_transfer("0xTAKEN", "100", block=1001)
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["completed"]

    with pytest.raises(ValidationError, match="already"):
        _direct(ctx, user, tx_id="0xTAKEN", amount="100", log_index=0)
    assert _count(ctx, Transaction) == 1


def test_direct_deposit_reported_by_another_user_is_rejected(ctx, user):
    bob = _open_bob(ctx)
    first = _direct(ctx, user, tx_id="0xEVT", amount="100", log_index=0)
    with pytest.raises(ValidationError, match="another deposit"):
        _direct(ctx, bob, tx_id="0xEVT", amount="100", log_index=0)
    with ctx.session_factory() as db:
        assert db.get(Transaction, first.id).user_id == user
    assert _count(ctx, Transaction) == 1


def test_session_matching_a_directly_reported_event_goes_to_review(ctx, user, chain, clock, pool):
    bob = _open_bob(ctx)
    direct = _direct(ctx, user, tx_id="0xEVT", amount="100", log_index=0)
    session_id = _intent(ctx, bob, expected_amount="100")
    chain.latest_block = 1001
    chain.add_transfer("0xEVT", "100", to_address=BOB_ADDRESS, block=1001)

    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["polling"]
    clock.advance(30)
    chain.latest_block = 1002
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["completed"]

    session = _session(ctx, session_id)
    assert session.status == RECEIVED
    assert session.review_reason == f"event 0xevt:0 already settled by transaction {direct.id}"
    assert any(alert["kind"] == "deposit_race_lost" for alert in ctx.monitor.alerter.sent)
    assert _count(ctx, ProcessedEvent) == 0

    # the direct deposit still owns the event and settles it
    assert pool.run_once(DEPOSIT_COMPLETION) == ["completed"]
    assert _portfolio(ctx, user).cash_value_usd == Decimal("100")
    assert _portfolio(ctx, bob).cash_value_usd == Decimal("0")
    assert _count(ctx, ProcessedEvent) == 1


def test_direct_deposit_fails_when_its_event_was_settled_meanwhile(ctx, user, pool):
    tx = _direct(ctx, user)
    with ctx.session_factory() as db:
        assert EventLedger(db).claim("base", "0xdirect", 4)
        db.commit()

    assert pool.run_once(DEPOSIT_COMPLETION) == ["completed"]
    with ctx.session_factory() as db:
        failed = db.get(Transaction, tx.id)
        assert failed.status == TX_FAILED
        assert "already settled" in failed.failure_reason
    assert _portfolio(ctx, user).cash_value_usd == Decimal("0")
    assert any(alert["kind"] == "deposit_race_lost" for alert in ctx.monitor.alerter.sent)


def test_confirmation_polls_stop_at_the_poll_limit(ctx, user, clock, pool):
    ctx.tasks[ONCHAIN_DEPOSIT_CONFIRMATION].repeat_limit = 2
    session_id = _intent(ctx, user, expected_amount="50")

    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["polling"]
    clock.advance(30)
    # well inside the session lifetime, but out of polls
    assert pool.run_once(ONCHAIN_DEPOSIT_CONFIRMATION) == ["completed"]
    assert _session(ctx, session_id).status == EXPIRED
    assert ctx.queue.get(f"{ONCHAIN_DEPOSIT_CONFIRMATION}:{session_id}").polls == 1
