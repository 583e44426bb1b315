import logging
from decimal import Decimal

from settlement.errors import NotFoundError, TerminalError
from settlement.jobs.queue import ClaimedJob
from settlement.services.catalog import CASH_SYMBOL
from settlement.services.dedup_ledger import EventLedger
from settlement.services.rebalance import RebalanceService
from settlement.services.reconciler import BalanceReconciler
from settlement.services.transactions import COMPLETED, FAILED, PROCESSING, TransactionStore

logger = logging.getLogger(__name__)


def process(ctx, job: ClaimedJob) -> None:
    transaction_id = job.payload["transaction_id"]
    with ctx.session_factory() as db:
        store = TransactionStore(db)
        try:
            tx = store.require(transaction_id)
        except NotFoundError as exc:
            raise TerminalError(str(exc)) from exc
        if tx.status in (COMPLETED, FAILED):
            logger.info("Deposit %s already %s, skipping", transaction_id, tx.status)
            return
        if tx.status != PROCESSING:
            raise TerminalError(f"Deposit {transaction_id} is {tx.status}; payment not confirmed")

        value = Decimal(tx.value_usd if tx.value_usd is not None else tx.destination_amount)
        user_id, allocation = tx.user_id, tx.allocation
        onchain = (tx.chain, tx.tx_id, tx.log_index) if tx.tx_id else None
        swaps = []
        group_id = None
        try:
            if onchain and not EventLedger(db).claim(*onchain):
                db.rollback()
                _reject_settled_event(ctx, db, store, transaction_id, user_id, onchain)
                return
            BalanceReconciler(db, ctx.catalog).apply_completed_transfer(
                user_id,
                tx.source_asset,
                tx.destination_asset or CASH_SYMBOL,
                Decimal(tx.source_amount),
                Decimal(tx.destination_amount),
                tx.id,
                from_value_usd=value,
                to_value_usd=value,
                settlement_reference=onchain[1] if onchain else tx.payment_receipt,
                commit=False,
            )
            if allocation:
                # convert the credited cash into the user's target mix in the same unit of work
                _, group_id, swaps = RebalanceService(db, ctx).execute_rebalance(user_id, allocation, commit=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        if swaps:
            logger.info("Deposit %s queued %s allocation swaps (group %s)", transaction_id, len(swaps), group_id)


def _reject_settled_event(ctx, db, store: TransactionStore, transaction_id: str, user_id: str, onchain: tuple) -> None:
    chain, tx_id, log_index = onchain
    reason = f"event {tx_id}:{log_index} already settled by another deposit"
    if store.mark_failed(transaction_id, reason):
        db.commit()
        ctx.monitor.alert(
            "deposit_race_lost",
            f"Deposit {transaction_id} reported an event settled elsewhere",
            transaction_id=transaction_id,
            user_id=user_id,
            chain=chain,
        )
