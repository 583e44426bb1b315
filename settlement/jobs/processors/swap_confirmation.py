import logging
from decimal import Decimal

from settlement.errors import NotFoundError, PollAgain, TerminalError
from settlement.jobs.queue import ClaimedJob
from settlement.money import from_base_units
from settlement.services.reconciler import BalanceReconciler
from settlement.services.swap_provider import SwapStatus
from settlement.services.transactions import COMPLETED, FAILED, TransactionStore

logger = logging.getLogger(__name__)


def settled_amount(ctx, tx, filled_base_units: int | None) -> Decimal:
    if filled_base_units:
        return from_base_units(filled_base_units, ctx.catalog.decimals(tx.destination_asset))
    estimated = (tx.provider_metadata or {}).get("estimated_output")
    if estimated:
        return Decimal(estimated)
    raise TerminalError(f"Swap {tx.id} completed but the received amount is unknown")


def process(ctx, job: ClaimedJob) -> None:
    transaction_id = job.payload["transaction_id"]
    with ctx.session_factory() as db:
        store = TransactionStore(db)
        try:
            tx = store.require(transaction_id)
        except NotFoundError as exc:
            raise TerminalError(str(exc)) from exc
        if tx.status in (COMPLETED, FAILED):
            return
        if not tx.order_id:
            store.mark_failed(transaction_id, "confirmation started without an order id")
            db.commit()
            raise TerminalError(f"Swap {transaction_id} has no order id")

        result = ctx.swap_provider.get_swap_status(tx.order_id)
        if result.status == SwapStatus.COMPLETED:
            to_amount = settled_amount(ctx, tx, result.filled_amount_base_units)
            value = Decimal(tx.value_usd) if tx.value_usd is not None else None
            BalanceReconciler(db, ctx.catalog).apply_completed_transfer(
                tx.user_id,
                tx.source_asset,
                tx.destination_asset,
                Decimal(tx.source_amount),
                to_amount,
                tx.id,
                from_value_usd=value,
                to_value_usd=value,
                settlement_reference=result.tx_hash or tx.order_id,
            )
            logger.info("Swap %s settled: received %s %s", transaction_id, to_amount, tx.destination_asset)
            return
        if result.status == SwapStatus.FAILED:
            store.mark_failed(transaction_id, result.reason or "order failed at provider")
            db.commit()
            return
        raise PollAgain(f"order {tx.order_id} {result.status.value}")


def on_exhausted(ctx, job: ClaimedJob) -> None:
    transaction_id = job.payload["transaction_id"]
    with ctx.session_factory() as db:
        store = TransactionStore(db)
        if store.mark_failed(transaction_id, "swap confirmation timed out"):
            db.commit()
            ctx.monitor.alert(
                "swap_confirmation_timeout",
                f"Swap {transaction_id} did not settle within the polling window",
                transaction_id=transaction_id,
            )
