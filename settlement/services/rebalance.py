import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.orm import Session

from settlement.errors import ValidationError
from settlement.models import Portfolio, Transaction
from settlement.money import HUNDRED, ZERO, quantize_usd, require_decimal
from settlement.services.accounts import AccountService
from settlement.services.catalog import CATEGORIES, AssetCatalog
from settlement.services.swaps import SwapService

logger = logging.getLogger(__name__)


@dataclass
class PlannedSwap:
    from_category: str
    to_category: str
    from_asset: str
    to_asset: str
    amount_usd: Decimal


@dataclass
class RebalancePlan:
    drift: Decimal
    needed: bool
    swaps: list[PlannedSwap] = field(default_factory=list)


def current_allocation(portfolio: Portfolio) -> dict[str, Decimal]:
    return {category: Decimal(getattr(portfolio, f"{category}_percent") or 0) for category in CATEGORIES}


def normalize_target(target: dict) -> dict[str, Decimal]:
    unknown = set(target) - set(CATEGORIES)
    if unknown:
        raise ValidationError(f"Unknown allocation categories: {sorted(unknown)}")
    normalized = {category: require_decimal(target.get(category, 0), category) for category in CATEGORIES}
    if any(value < 0 for value in normalized.values()):
        raise ValidationError("Allocation percentages must not be negative")
    if sum(normalized.values(), ZERO) != HUNDRED:
        raise ValidationError("Allocation must sum to 100")
    return normalized


def calculate_drift(current: dict[str, Decimal], target: dict[str, Decimal]) -> Decimal:
    return sum((abs(current.get(category, ZERO) - target.get(category, ZERO)) for category in CATEGORIES), ZERO)


def plan_rebalance(
    portfolio: Portfolio,
    target: dict,
    catalog: AssetCatalog,
    drift_threshold: Decimal = Decimal("5"),
    min_swap_usd: Decimal = Decimal("1"),
) -> RebalancePlan:
    target = normalize_target(target)
    drift = calculate_drift(current_allocation(portfolio), target)
    total = Decimal(portfolio.total_value_usd or 0)
    if drift <= drift_threshold or total <= 0:
        return RebalancePlan(drift=drift, needed=False)

    surplus: list[list] = []
    deficit: list[list] = []
    for category in CATEGORIES:
        diff = Decimal(getattr(portfolio, f"{category}_value_usd") or 0) - total * target[category] / HUNDRED
        if diff > 0:
            surplus.append([category, diff])
        elif diff < 0:
            deficit.append([category, -diff])
    surplus.sort(key=lambda item: item[1], reverse=True)
    deficit.sort(key=lambda item: item[1], reverse=True)

    swaps: list[PlannedSwap] = []
    while surplus and deficit:
        source, target_side = surplus[0], deficit[0]
        amount = min(source[1], target_side[1])
        if amount >= min_swap_usd:
            swaps.append(
                PlannedSwap(
                    from_category=source[0],
                    to_category=target_side[0],
                    from_asset=catalog.primary_asset(source[0]),
                    to_asset=catalog.primary_asset(target_side[0]),
                    amount_usd=quantize_usd(amount),
                )
            )
        source[1] -= amount
        target_side[1] -= amount
        if source[1] <= 0:
            surplus.pop(0)
        if target_side[1] <= 0:
            deficit.pop(0)
    return RebalancePlan(drift=drift, needed=bool(swaps), swaps=swaps)


class RebalanceService:
    def __init__(self, db: Session, ctx) -> None:
        self.db = db
        self.ctx = ctx

    def plan(self, user_id: str, target: dict) -> RebalancePlan:
        portfolio = AccountService(self.db).require_portfolio(user_id)
        settings = self.ctx.settings
        return plan_rebalance(
            portfolio, target, self.ctx.catalog, settings.rebalance_drift_threshold, settings.min_rebalance_usd
        )

    def execute_rebalance(self, user_id: str, target: dict, commit: bool = True) -> tuple[RebalancePlan, str | None, list[Transaction]]:
        plan = self.plan(user_id, target)
        if not plan.needed:
            logger.info("Rebalance for %s not needed (drift=%s)", user_id, plan.drift)
            return plan, None, []
        group_id = str(uuid.uuid4())
        swaps = SwapService(self.db, self.ctx)
        created = []
        for index, planned in enumerate(plan.swaps):
            amount = swaps.units_for_usd(user_id, planned.from_asset, planned.amount_usd)
            tx = swaps.create_swap(
                user_id,
                planned.from_asset,
                planned.to_asset,
                amount,
                metadata={
                    "rebalance_group_id": group_id,
                    "rebalance_index": index,
                    "from_category": planned.from_category,
                    "to_category": planned.to_category,
                },
            )
            created.append(tx)
        if commit:
            self.db.commit()
        logger.info("Rebalance %s for %s: %s swaps (drift=%s)", group_id, user_id, len(created), plan.drift)
        return plan, group_id, created
