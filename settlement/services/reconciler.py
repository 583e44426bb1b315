import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.errors import InvalidTransition, NotFoundError, ValidationError
from settlement.models import Portfolio, PortfolioHolding, Transaction, TransactionStatus, TransactionType, Wallet
from settlement.money import HUNDRED, ZERO, percent_of, quantize_percent, quantize_usd, require_decimal
from settlement.services.catalog import CATEGORIES, AssetCatalog

logger = logging.getLogger(__name__)

COMPLETED = TransactionStatus.COMPLETED.value
OPEN = {TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value}
# largest value the all_time_return_percent column holds
MAX_RETURN_PERCENT = Decimal("9999999999999999.9999")


@dataclass
class Transfer:
    transaction_id: str
    from_asset: str
    to_asset: str
    from_amount: Decimal
    to_amount: Decimal
    # USD legs default to the token amounts (stable pricing at par)
    from_value_usd: Decimal | None = None
    to_value_usd: Decimal | None = None
    settlement_reference: str | None = None


@dataclass
class ReconcileResult:
    user_id: str
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    total_value_usd: Decimal = ZERO
    percentages: dict[str, Decimal] = field(default_factory=dict)


class BalanceReconciler:
    """Applies settled transfers to Portfolio, Wallet, holdings and Transaction as one unit of work.

    Already completed transactions are skipped, so a retried job re-running the
    whole reconciliation changes nothing the second time. With ``commit=False``
    the caller owns the surrounding database transaction.
    """

    def __init__(self, db: Session, catalog: AssetCatalog | None = None) -> None:
        self.db = db
        self.catalog = catalog or AssetCatalog()

    def apply_completed_transfer(
        self,
        user_id: str,
        from_asset: str,
        to_asset: str,
        from_amount,
        to_amount,
        transaction_id: str,
        from_value_usd=None,
        to_value_usd=None,
        settlement_reference: str | None = None,
        commit: bool = True,
    ) -> ReconcileResult:
        transfer = Transfer(
            transaction_id=transaction_id,
            from_asset=from_asset,
            to_asset=to_asset,
            from_amount=require_decimal(from_amount, "from_amount"),
            to_amount=require_decimal(to_amount, "to_amount"),
            from_value_usd=None if from_value_usd is None else require_decimal(from_value_usd, "from_value_usd"),
            to_value_usd=None if to_value_usd is None else require_decimal(to_value_usd, "to_value_usd"),
            settlement_reference=settlement_reference,
        )
        return self.apply_completed_batch(user_id, [transfer], commit=commit)

    def apply_completed_batch(self, user_id: str, transfers: list[Transfer], commit: bool = True) -> ReconcileResult:
        if not transfers:
            raise ValidationError("No transfers to apply")
        try:
            result = self._apply(user_id, transfers)
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except Exception:
            if commit:
                self.db.rollback()
            raise
        if result.applied:
            logger.info(
                "Reconciled %s for user %s (total=%s, skipped=%s)",
                result.applied,
                user_id,
                result.total_value_usd,
                result.skipped,
            )
        return result

    def _apply(self, user_id: str, transfers: list[Transfer]) -> ReconcileResult:
        portfolio = self.db.execute(
            select(Portfolio).where(Portfolio.user_id == user_id).with_for_update()
        ).scalar_one_or_none()
        wallet = self.db.execute(select(Wallet).where(Wallet.user_id == user_id).with_for_update()).scalar_one_or_none()
        if portfolio is None or wallet is None:
            raise NotFoundError(f"Portfolio or wallet missing for user {user_id}")

        transactions: dict[str, Transaction] = {}
        for transfer in transfers:
            if transfer.transaction_id in transactions:
                continue
            tx = self.db.get(Transaction, transfer.transaction_id, populate_existing=True, with_for_update=True)
            if tx is None:
                raise NotFoundError(f"Transaction {transfer.transaction_id} not found")
            if tx.user_id != user_id:
                raise ValidationError(f"Transaction {tx.id} does not belong to user {user_id}")
            if tx.status != COMPLETED and tx.status not in OPEN:
                raise InvalidTransition("Transaction", tx.id, tx.status, COMPLETED)
            transactions[tx.id] = tx

        result = ReconcileResult(user_id=user_id)
        settled: dict[str, list[Transfer]] = {}
        for transfer in transfers:
            tx = transactions[transfer.transaction_id]
            if tx.status == COMPLETED:
                if tx.id not in result.skipped:
                    result.skipped.append(tx.id)
                continue
            self._apply_transfer(portfolio, wallet, tx, transfer)
            settled.setdefault(tx.id, []).append(transfer)

        self._recompute(portfolio)
        now = datetime.utcnow()
        portfolio.updated_at = now
        wallet.balances_updated_at = now

        for tx_id, tx_transfers in settled.items():
            tx = transactions[tx_id]
            if len(tx_transfers) == 1:
                tx.destination_amount = tx_transfers[0].to_amount
            if tx.value_usd is None:
                tx.value_usd = quantize_usd(sum((self._to_usd(t) for t in tx_transfers), ZERO))
            reference = next((t.settlement_reference for t in tx_transfers if t.settlement_reference), None)
            if reference and not tx.settlement_reference:
                tx.settlement_reference = reference
            tx.status = COMPLETED
            tx.completed_at = now
            tx.updated_at = now
            result.applied.append(tx_id)

        result.total_value_usd = portfolio.total_value_usd
        result.percentages = {category: getattr(portfolio, f"{category}_percent") for category in CATEGORIES}
        return result

    def _from_usd(self, transfer: Transfer) -> Decimal:
        return transfer.from_value_usd if transfer.from_value_usd is not None else transfer.from_amount

    def _to_usd(self, transfer: Transfer) -> Decimal:
        return transfer.to_value_usd if transfer.to_value_usd is not None else transfer.to_amount

    def _apply_transfer(self, portfolio: Portfolio, wallet: Wallet, tx: Transaction, transfer: Transfer) -> None:
        if transfer.from_amount < 0 or transfer.to_amount < 0:
            raise ValidationError("Transfer amounts must not be negative")
        from_category = self.catalog.get_asset_category(transfer.from_asset)
        to_category = self.catalog.get_asset_category(transfer.to_asset)
        from_usd = self._from_usd(transfer)
        to_usd = self._to_usd(transfer)
        inflow = tx.type == TransactionType.DEPOSIT.value

        moved_cost = ZERO
        if not inflow:
            if from_category is None:
                raise ValidationError(f"{transfer.from_asset} is not held in the portfolio")
            self._add_category(portfolio, from_category, -from_usd)
            self._add_balance(wallet, from_category, -transfer.from_amount)
            moved_cost = self._adjust_holding(portfolio, transfer.from_asset, from_category, -transfer.from_amount, -from_usd)

        if to_category is None:
            # value leaves the platform
            if not inflow:
                portfolio.total_withdrawn_usd = quantize_usd(Decimal(portfolio.total_withdrawn_usd) + from_usd)
            return

        self._add_category(portfolio, to_category, to_usd)
        self._add_balance(wallet, to_category, transfer.to_amount)
        cost = to_usd if inflow else moved_cost
        self._adjust_holding(portfolio, transfer.to_asset, to_category, transfer.to_amount, to_usd, cost)
        if inflow:
            portfolio.total_deposited_usd = quantize_usd(Decimal(portfolio.total_deposited_usd) + to_usd)

    def _add_category(self, portfolio: Portfolio, category: str, delta: Decimal) -> None:
        name = f"{category}_value_usd"
        value = Decimal(getattr(portfolio, name)) + delta
        if value < ZERO:
            logger.warning("Portfolio %s %s would go negative (%s); clamping", portfolio.user_id, category, value)
            value = ZERO
        setattr(portfolio, name, quantize_usd(value))

    def _add_balance(self, wallet: Wallet, category: str, delta: Decimal) -> None:
        name = f"{category}_balance"
        value = Decimal(getattr(wallet, name)) + delta
        if value < ZERO:
            logger.warning("Wallet %s %s balance would go negative (%s); clamping", wallet.user_id, category, value)
            value = ZERO
        setattr(wallet, name, value)

    def _adjust_holding(
        self,
        portfolio: Portfolio,
        symbol: str,
        category: str,
        amount_delta: Decimal,
        usd_delta: Decimal,
        cost_delta: Decimal | None = None,
    ) -> Decimal:
        """Returns the cost basis released when the holding shrinks."""
        symbol = symbol.upper()
        holding = self.db.execute(
            select(PortfolioHolding)
            .where(PortfolioHolding.portfolio_id == portfolio.id, PortfolioHolding.symbol == symbol)
            .with_for_update()
        ).scalar_one_or_none()
        if holding is None:
            holding = PortfolioHolding(
                portfolio_id=portfolio.id,
                symbol=symbol,
                category=category,
                balance=ZERO,
                value_usd=ZERO,
                cost_basis_usd=ZERO,
            )
            self.db.add(holding)
        balance = Decimal(holding.balance)
        cost_basis = Decimal(holding.cost_basis_usd)
        released = ZERO
        if amount_delta < 0 and balance > 0:
            fraction = min(Decimal(1), -amount_delta / balance)
            released = quantize_usd(cost_basis * fraction)
            cost_basis -= released
        if cost_delta is not None:
            cost_basis += cost_delta
        holding.balance = max(ZERO, balance + amount_delta)
        holding.value_usd = quantize_usd(max(ZERO, Decimal(holding.value_usd) + usd_delta))
        holding.cost_basis_usd = quantize_usd(max(ZERO, cost_basis))
        holding.category = category
        holding.updated_at = datetime.utcnow()
        self.db.flush()
        return released

    def _recompute(self, portfolio: Portfolio) -> None:
        values = {category: quantize_usd(Decimal(getattr(portfolio, f"{category}_value_usd"))) for category in CATEGORIES}
        total = sum(values.values(), ZERO)
        portfolio.total_value_usd = total
        percents = {category: percent_of(value, total) for category, value in values.items()}
        if total > ZERO:
            drift = HUNDRED - sum(percents.values(), ZERO)
            if drift:
                largest = max(values, key=lambda category: values[category])
                percents[largest] = quantize_percent(percents[largest] + drift)
        for category, percent in percents.items():
            setattr(portfolio, f"{category}_percent", percent)

        net_deposited = Decimal(portfolio.total_deposited_usd) - Decimal(portfolio.total_withdrawn_usd)
        if net_deposited > ZERO:
            gain = total - net_deposited
            portfolio.all_time_gain_usd = quantize_usd(gain)
            portfolio.all_time_return_percent = min(quantize_percent(gain / net_deposited * HUNDRED), MAX_RETURN_PERCENT)
