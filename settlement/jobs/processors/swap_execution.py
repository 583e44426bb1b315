import logging

from settlement.errors import NotFoundError, SwapProviderError, TerminalError, TransientError
from settlement.jobs.queue import ClaimedJob
from settlement.money import from_base_units
from settlement.services.swaps import SwapService
from settlement.services.transactions import COMPLETED, FAILED, PENDING, PROCESSING

logger = logging.getLogger(__name__)


def process(ctx, job: ClaimedJob) -> None:
    transaction_id = job.payload["transaction_id"]
    provider = ctx.swap_provider
    with ctx.session_factory() as db:
        service = SwapService(db, ctx)
        store = service.transactions
        try:
            tx = store.require(transaction_id)
        except NotFoundError as exc:
            raise TerminalError(str(exc)) from exc
        if tx.status in (COMPLETED, FAILED):
            return
        if tx.status == PROCESSING:
            if tx.order_id:
                # placed by an earlier run; resume polling instead of placing again
                logger.info("Swap %s already has order %s, resuming confirmation", transaction_id, tx.order_id)
                service.enqueue_confirmation(tx)
                db.commit()
                return
            ctx.monitor.alert(
                "swap_execution_anomaly",
                f"Swap {transaction_id} is processing without an order id",
                transaction_id=transaction_id,
            )
            raise TerminalError(f"Swap {transaction_id} processing without order id; needs manual review")
        if tx.status != PENDING:
            raise TerminalError(f"Swap {transaction_id} has unexpected status {tx.status}")

        if not provider.is_configured():
            store.mark_failed(transaction_id, f"{provider.get_provider_name()} is not configured")
            db.commit()
            raise TerminalError("swap provider not configured")

        request = service.request_for(tx)
        if not store.mark_processing(transaction_id):
            db.rollback()
            logger.info("Swap %s claimed by another worker", transaction_id)
            return
        db.commit()

        try:
            order = provider.execute_swap(request)
        except SwapProviderError as exc:
            if exc.refused:
                service.release_claim(transaction_id)
                db.commit()
                raise TransientError(str(exc)) from exc
            if exc.retryable:
                # timeouts and gateway errors: the order may or may not exist at the venue
                ctx.monitor.alert(
                    "swap_execution_anomaly",
                    f"Swap {transaction_id} outcome unknown: {exc}",
                    transaction_id=transaction_id,
                    status_code=exc.status_code,
                )
                raise TerminalError(str(exc)) from exc
            store.mark_failed(transaction_id, str(exc))
            db.commit()
            raise TerminalError(str(exc)) from exc

        estimated = None
        if order.estimated_output_base_units:
            estimated = str(from_base_units(order.estimated_output_base_units, ctx.catalog.decimals(tx.destination_asset)))
        tx = store.update_metadata(
            transaction_id,
            order_id=order.order_id,
            provider=order.provider,
            tx_hash=order.tx_hash,
            estimated_output=estimated,
        )
        service.enqueue_confirmation(tx)
        db.commit()
        logger.info("Swap %s placed with %s as %s", transaction_id, order.provider, order.order_id)
