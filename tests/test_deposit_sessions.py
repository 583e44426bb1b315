from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from settlement.errors import NotFoundError
from settlement.services.chain_client import TransferEvent
from settlement.services.deposit_sessions import (
    AWAITING,
    CONFIRMED,
    EXPIRED,
    FAILED,
    RECEIVED,
    DepositSessionStore,
    amount_in_bounds,
)

from conftest import SENDER, USER_ADDRESS


def _event(tx_id="0xAA", amount="100", log_index=0) -> TransferEvent:
    return TransferEvent(
        tx_id=tx_id,
        log_index=log_index,
        from_address=SENDER,
        to_address=USER_ADDRESS,
        amount=Decimal(amount),
        block_number=1001,
    )


def _create(store: DepositSessionStore, now: dt.datetime, ttl: int = 60):
    return store.create(
        user_id="alice",
        chain="Base",
        token_symbol="usdc",
        token_address="0xtoken",
        deposit_address=USER_ADDRESS,
        created_at_block=1000,
        min_amount=Decimal("95"),
        max_amount=Decimal("105"),
        expected_amount=Decimal("100"),
        ttl_minutes=ttl,
        now=now,
    )


def test_amount_bounds_are_inclusive():
    assert amount_in_bounds(Decimal("95"), Decimal("95"), Decimal("105"))
    assert amount_in_bounds(Decimal("105"), Decimal("95"), Decimal("105"))
    assert not amount_in_bounds(Decimal("94.99"), Decimal("95"), Decimal("105"))
    assert not amount_in_bounds(Decimal("105.01"), Decimal("95"), Decimal("105"))
    assert amount_in_bounds(Decimal("1000000"), Decimal("95"), None)


def test_create_normalizes_and_sets_expiry(db, clock):
    store = DepositSessionStore(db)
    session = _create(store, clock())
    assert session.status == AWAITING
    assert session.chain == "base"
    assert session.token_symbol == "USDC"
    assert session.expires_at == clock() + dt.timedelta(minutes=60)


def test_forward_transitions(db, clock):
    store = DepositSessionStore(db)
    session = _create(store, clock())
    assert store.bind_match(session.id, _event(tx_id="0xAbC"), now=clock())
    received = store.require(session.id)
    assert received.status == RECEIVED
    assert received.matched_tx_id == "0xabc"
    assert received.matched_amount == Decimal("100")
    assert received.matched_from_address == SENDER

    assert store.mark_confirmed(session.id, "tx-1", now=clock())
    confirmed = store.require(session.id)
    assert confirmed.status == CONFIRMED
    assert confirmed.transaction_id == "tx-1"


def test_no_backward_or_skipping_transitions(db, clock):
    store = DepositSessionStore(db)
    session = _create(store, clock())
    assert not store.mark_confirmed(session.id, "tx-1")
    assert store.require(session.id).status == AWAITING

    store.bind_match(session.id, _event())
    store.mark_confirmed(session.id, "tx-1")
    assert not store.mark_expired(session.id)
    assert not store.mark_failed(session.id, "late")
    assert not store.bind_match(session.id, _event(tx_id="0xother"))
    assert store.require(session.id).status == CONFIRMED


def test_match_binds_only_once(db, clock):
    store = DepositSessionStore(db)
    session = _create(store, clock())
    assert store.bind_match(session.id, _event(tx_id="0x01"))
    assert not store.bind_match(session.id, _event(tx_id="0x02"))
    assert store.require(session.id).matched_tx_id == "0x01"


def test_received_session_can_fail(db, clock):
    store = DepositSessionStore(db)
    session = _create(store, clock())
    store.bind_match(session.id, _event())
    assert store.mark_failed(session.id, "confirmation-timeout")
    failed = store.require(session.id)
    assert failed.status == FAILED
    assert failed.failure_reason == "confirmation-timeout"


def test_expire_stale_marks_past_sessions_once(db, clock):
    store = DepositSessionStore(db)
    stale = _create(store, clock() - dt.timedelta(hours=2))
    fresh = _create(store, clock())
    db.commit()

    assert store.expire_stale(clock()) == [stale.id]
    assert store.expire_stale(clock()) == []
    assert store.require(stale.id).status == EXPIRED
    assert store.require(fresh.id).status == AWAITING


def test_review_flag_is_set_once(db, clock):
    store = DepositSessionStore(db)
    session = _create(store, clock())
    store.bind_match(session.id, _event())
    assert store.flag_for_review(session.id, "lost race")
    assert not store.flag_for_review(session.id, "again")
    flagged = store.list_for_review()
    assert [item.id for item in flagged] == [session.id]
    assert flagged[0].review_reason == "lost race"


def test_require_missing_session(db):
    with pytest.raises(NotFoundError):
        DepositSessionStore(db).require("missing")
