#!/usr/bin/env python
import argparse
import json
import sys
import time
import uuid

import httpx


def request(method: str, base_url: str, path: str, payload: dict | None = None, params: dict | None = None) -> dict:
    url = f"{base_url.rstrip('/')}{path}"
    response = httpx.request(method, url, json=payload, params=params, timeout=20)
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        detail = ""
        try:
            detail = json.dumps(response.json(), indent=2)
        except ValueError:
            detail = response.text
        raise RuntimeError(f"{method} {path} failed: {detail}") from exc
    if response.content:
        return response.json()
    return {}


def wait_for_status(base_url: str, transaction_id: str, wanted: str, timeout_sec: float) -> dict:
    deadline = time.monotonic() + timeout_sec
    while True:
        tx = request("GET", base_url, f"/transactions/{transaction_id}")
        if tx.get("status") == wanted:
            return tx
        if tx.get("status") == "failed" or time.monotonic() > deadline:
            raise RuntimeError(f"Transaction {transaction_id} did not reach {wanted}: {tx}")
        time.sleep(1)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run settlement API smoke checks against a running server.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--address", default="0x" + "11" * 20, help="wallet address for the smoke user")
    parser.add_argument("--wait", type=float, default=0, help="seconds to wait for workers to settle the deposit")
    args = parser.parse_args()

    base_url = args.base_url
    user_id = f"smoke-{uuid.uuid4().hex[:8]}"
    reference = f"smoke-{uuid.uuid4().hex}"

    health = request("GET", base_url, "/health")
    if health.get("status") != "ok":
        raise RuntimeError(f"Health check failed: {health}")

    account = request("POST", base_url, "/accounts", {"user_id": user_id, "address": args.address})
    if "portfolio_id" not in account:
        raise RuntimeError(f"Account response missing portfolio_id: {account}")

    intent = request("POST", base_url, "/deposits/intents", {"user_id": user_id, "expected_amount": "25"})
    if intent.get("status") != "awaiting_transfer":
        raise RuntimeError(f"Deposit intent not awaiting a transfer: {intent}")
    status = request("GET", base_url, f"/deposits/intents/{intent['session_id']}")
    if status.get("session_id") != intent["session_id"]:
        raise RuntimeError(f"Deposit intent lookup failed: {status}")

    deposit = request(
        "POST",
        base_url,
        "/deposits/payment",
        {"user_id": user_id, "amount": "1300", "exchange_rate": "130", "reference": reference},
    )
    if deposit.get("status") != "pending":
        raise RuntimeError(f"Payment deposit not pending: {deposit}")

    callback = request(
        "POST",
        base_url,
        "/deposits/payment/callback",
        {"external_ref": reference, "amount": "1300", "status": "success", "receipt": "SMOKE"},
    )
    if callback.get("status") not in {"processing", "completed"}:
        raise RuntimeError(f"Payment callback not accepted: {callback}")

    if args.wait:
        wait_for_status(base_url, deposit["id"], "completed", args.wait)
        portfolio = request("GET", base_url, f"/portfolio/{user_id}")
        if float(portfolio["values_usd"]["cash"]) <= 0:
            raise RuntimeError(f"Deposit did not reach the portfolio: {portfolio}")

    plan = request(
        "POST", base_url, f"/portfolio/{user_id}/rebalance", {"target": {"cash": 100}, "dry_run": True}
    )
    if "drift" not in plan:
        raise RuntimeError(f"Rebalance plan missing drift: {plan}")

    metrics = request("GET", base_url, "/queues/metrics")
    if "jobs" not in metrics:
        raise RuntimeError(f"Queue metrics missing jobs: {metrics}")

    print("Settlement smoke checks passed.")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:
        print(f"Smoke check failed: {exc}", file=sys.stderr)
        sys.exit(1)
