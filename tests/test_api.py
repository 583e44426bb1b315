from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import USER_ADDRESS
from settlement.jobs.queue import TaskOptions
from settlement.jobs.tasks import DEPOSIT_COMPLETION, SWAP_EXECUTION
from settlement.main import create_app


@pytest.fixture()
def client(ctx):
    with TestClient(create_app(ctx)) as test_client:
        yield test_client


@pytest.fixture()
def account(client):
    response = client.post("/accounts", json={"user_id": "alice", "address": USER_ADDRESS, "chain": "base"})
    assert response.status_code == 200
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_open_account_is_idempotent(client, account):
    again = client.post("/accounts", json={"user_id": "alice", "address": USER_ADDRESS})
    assert again.status_code == 200
    assert again.json()["portfolio_id"] == account["portfolio_id"]

    conflict = client.post("/accounts", json={"user_id": "alice", "address": "0x" + "33" * 20})
    assert conflict.status_code == 400

    bad = client.post("/accounts", json={"user_id": "bob", "address": "not-an-address"})
    assert bad.status_code == 400


def test_unknown_portfolio_is_404(client):
    assert client.get("/portfolio/nobody").status_code == 404


def test_deposit_intent_lifecycle(client, account):
    created = client.post("/deposits/intents", json={"user_id": "alice", "expected_amount": "100"})
    assert created.status_code == 200
    body = created.json()
    assert Decimal(body["min_amount"]) == Decimal("95")
    assert body["status"] == "awaiting_transfer"
    assert body["deposit_address"].lower() == USER_ADDRESS

    status = client.get(f"/deposits/intents/{body['session_id']}")
    assert status.json()["status"] == "awaiting_transfer"
    confirm = client.post(f"/deposits/intents/{body['session_id']}/confirm")
    assert confirm.status_code == 200
    assert client.get("/deposits/intents/missing").status_code == 404


def test_deposit_intent_rejects_unsupported_chain(client, account):
    response = client.post("/deposits/intents", json={"user_id": "alice", "chain": "solana", "expected_amount": "10"})
    assert response.status_code == 400
    assert "Unsupported chain" in response.json()["detail"]


def test_request_validation_is_422(client, account):
    response = client.post("/deposits/intents", json={"user_id": "alice", "expected_amount": "-5"})
    assert response.status_code == 422


def test_payment_deposit_through_the_api(client, account, pool):
    created = client.post(
        "/deposits/payment",
        json={"user_id": "alice", "amount": "1300", "exchange_rate": "130", "reference": "mpesa-9"},
    )
    assert created.status_code == 200
    tx = created.json()
    assert tx["status"] == "pending"

    paid = client.post(
        "/deposits/payment/callback",
        json={"external_ref": "mpesa-9", "amount": "1300", "status": "success", "receipt": "RCP9"},
    )
    assert paid.json()["status"] == "processing"
    assert pool.run_once(DEPOSIT_COMPLETION) == ["completed"]

    assert client.get(f"/transactions/{tx['id']}").json()["status"] == "completed"
    portfolio = client.get("/portfolio/alice").json()
    assert Decimal(portfolio["values_usd"]["cash"]) == Decimal("10")
    assert [holding["symbol"] for holding in portfolio["holdings"]] == ["USDC"]

    unknown = client.post("/deposits/payment/callback", json={"external_ref": "nope", "amount": "1", "status": "success"})
    assert unknown.status_code == 404


def test_onchain_deposit_and_allocated_cash(client, account, pool):
    payload = {"user_id": "alice", "chain": "base", "tx_id": "0xABC", "log_index": 1, "amount": "25"}
    first = client.post("/deposits/onchain", json=payload)
    second = client.post("/deposits/onchain", json=payload)
    assert first.json()["id"] == second.json()["id"]
    assert first.json()["status"] == "processing"
    cash = client.get("/accounts/alice/allocated-cash", params={"chain": "base"}).json()
    assert Decimal(cash["amount"]) == Decimal("0")

    assert pool.run_once(DEPOSIT_COMPLETION) == ["completed"]
    assert client.get(f"/transactions/{first.json()['id']}").json()["status"] == "completed"
    cash = client.get("/accounts/alice/allocated-cash", params={"chain": "base"}).json()
    assert Decimal(cash["amount"]) == Decimal("25")

    client.post("/accounts", json={"user_id": "bob", "address": "0x" + "33" * 20, "chain": "base"})
    taken = client.post("/deposits/onchain", json={**payload, "user_id": "bob"})
    assert taken.status_code == 400


def test_swap_quote_and_execution(client, account, provider):
    quote = client.post("/swaps/quote", json={"user_id": "alice", "from_asset": "USDC", "to_asset": "USDM", "amount": "2"})
    assert quote.status_code == 200
    assert Decimal(quote.json()["to_amount"]) == Decimal("0.000000000002")

    swap = client.post("/swaps", json={"user_id": "alice", "from_asset": "USDC", "to_asset": "USDM", "amount": "2"})
    assert swap.status_code == 200
    assert swap.json()["status"] == "pending"

    same = client.post("/swaps", json={"user_id": "alice", "from_asset": "USDC", "to_asset": "usdc", "amount": "2"})
    assert same.status_code == 400

    provider.configured = False
    assert client.post("/swaps/quote", json={"user_id": "alice", "from_asset": "USDC", "to_asset": "USDM", "amount": "2"}).status_code == 503


def test_rebalance_dry_run_creates_nothing(client, account, ctx, pool):
    client.post("/deposits/payment", json={"user_id": "alice", "amount": "100", "exchange_rate": "1", "reference": "r-1"})
    client.post("/deposits/payment/callback", json={"external_ref": "r-1", "amount": "100", "status": "success"})
    assert pool.run_once(DEPOSIT_COMPLETION) == ["completed"]

    target = {"target": {"cash": 50, "tokenized_gold": 50}, "dry_run": True}
    plan = client.post("/portfolio/alice/rebalance", json=target).json()
    assert plan["needed"] is True
    assert plan["transaction_ids"] == []
    assert [swap["to_asset"] for swap in plan["swaps"]] == ["PAXG"]

    target["dry_run"] = False
    executed = client.post("/portfolio/alice/rebalance", json=target).json()
    assert len(executed["transaction_ids"]) == 1
    assert executed["group_id"]
    assert ctx.queue.get(f"{SWAP_EXECUTION}:{executed['transaction_ids'][0]}") is not None
    group = client.get(f"/portfolio/alice/rebalance/{executed['group_id']}").json()
    assert [swap["id"] for swap in group] == executed["transaction_ids"]
    assert client.get("/portfolio/alice/rebalance/unknown").status_code == 404

    bad = client.post("/portfolio/alice/rebalance", json={"target": {"cash": 10}})
    assert bad.status_code == 400


def test_queue_endpoints(client, account, ctx):
    options = TaskOptions("demo", max_attempts=1)
    ctx.queue.enqueue(options, "1", {})
    [job] = ctx.queue.claim("demo")
    ctx.queue.fail(job, "boom")

    metrics = client.get("/queues/metrics").json()
    assert metrics["accepting"] is True
    assert metrics["jobs"]["demo"]["failed"] == 1

    failed = client.get("/queues/failed").json()
    assert failed[0]["job_key"] == "demo:1"
    assert failed[0]["last_error"] == "boom"

    assert client.post("/queues/failed/demo:1/retry").json() == {"job_key": "demo:1", "requeued": True}
    assert client.post("/queues/failed/demo:1/retry").status_code == 404
