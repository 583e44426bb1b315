from __future__ import annotations

from decimal import Decimal

import pytest

from settlement.errors import ValidationError
from settlement.models import Portfolio
from settlement.services.catalog import AssetCatalog
from settlement.services.rebalance import (
    RebalanceService,
    calculate_drift,
    current_allocation,
    normalize_target,
    plan_rebalance,
)
from settlement.services.reconciler import BalanceReconciler
from settlement.services.transactions import OnchainDepositParams, TransactionStore


def _portfolio(**values) -> Portfolio:
    portfolio = Portfolio(user_id="alice")
    total = sum((Decimal(value) for value in values.values()), Decimal(0))
    for category in ("cash", "stable_yields", "defi_yield", "tokenized_gold", "bluechip_crypto"):
        value = Decimal(values.get(category, 0))
        setattr(portfolio, f"{category}_value_usd", value)
        setattr(portfolio, f"{category}_percent", value / total * 100 if total else Decimal(0))
    portfolio.total_value_usd = total
    return portfolio


def test_normalize_target_fills_missing_categories():
    target = normalize_target({"cash": "40", "tokenized_gold": 60})
    assert target["cash"] == Decimal("40")
    assert target["tokenized_gold"] == Decimal("60")
    assert target["bluechip_crypto"] == Decimal("0")


@pytest.mark.parametrize(
    "target",
    [
        {"cash": 50, "stable_yields": 40},
        {"cash": 110, "stable_yields": -10},
        {"cash": 100, "shares": 0},
        {"cash": "lots"},
    ],
)
def test_normalize_target_rejects_bad_allocations(target):
    with pytest.raises(ValidationError):
        normalize_target(target)


def test_drift_is_sum_of_absolute_differences():
    portfolio = _portfolio(cash=75, stable_yields=25)
    drift = calculate_drift(current_allocation(portfolio), normalize_target({"cash": 50, "stable_yields": 50}))
    assert drift == Decimal("50")


def test_small_drift_needs_no_rebalance():
    portfolio = _portfolio(cash=52, stable_yields=48)
    plan = plan_rebalance(portfolio, {"cash": 50, "stable_yields": 50}, AssetCatalog())
    assert not plan.needed
    assert plan.swaps == []


def test_plan_pairs_largest_surplus_with_largest_deficit():
    portfolio = _portfolio(cash=100)
    plan = plan_rebalance(
        portfolio, {"cash": 20, "stable_yields": 50, "tokenized_gold": 30}, AssetCatalog()
    )
    assert plan.needed
    assert [(swap.from_asset, swap.to_asset, swap.amount_usd) for swap in plan.swaps] == [
        ("USDC", "USDM", Decimal("50")),
        ("USDC", "PAXG", Decimal("30")),
    ]


def test_swaps_below_minimum_are_skipped():
    portfolio = _portfolio(cash=10)
    plan = plan_rebalance(
        portfolio,
        {"cash": 90, "stable_yields": 10},
        AssetCatalog(),
        drift_threshold=Decimal("5"),
        min_swap_usd=Decimal("2"),
    )
    assert not plan.needed


def test_execute_rebalance_creates_grouped_swaps(ctx, user):
    with ctx.session_factory() as db:
        tx = TransactionStore(db).create_onchain_deposit(
            OnchainDepositParams(user_id=user, chain="base", tx_id="0x01", log_index=0, token_symbol="USDC", amount=Decimal("100"))
        )
        db.commit()
        BalanceReconciler(db, ctx.catalog).apply_completed_transfer(user, "USDC", "USDC", "100", "100", tx.id)
        plan, group_id, swaps = RebalanceService(db, ctx).execute_rebalance(
            user, {"cash": 50, "stable_yields": 25, "tokenized_gold": 25}
        )

    assert plan.drift == Decimal("100")
    assert group_id is not None
    assert [(swap.destination_asset, swap.source_amount) for swap in swaps] == [
        ("USDM", Decimal("25")),
        ("PAXG", Decimal("25")),
    ]
    assert [swap.provider_metadata["rebalance_index"] for swap in swaps] == [0, 1]
    assert all(swap.provider_metadata["rebalance_group_id"] == group_id for swap in swaps)
    for swap in swaps:
        assert ctx.queue.get(f"swap-execution:{swap.id}") is not None


def test_rebalance_on_balanced_portfolio_creates_nothing(ctx, user):
    with ctx.session_factory() as db:
        plan, group_id, swaps = RebalanceService(db, ctx).execute_rebalance(user, {"cash": 100})
    assert not plan.needed
    assert group_id is None
    assert swaps == []
