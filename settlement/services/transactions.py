import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.errors import NotFoundError, ValidationError
from settlement.models import Transaction, TransactionStatus, TransactionType
from settlement.services.dedup_ledger import normalize_tx_id

logger = logging.getLogger(__name__)

PENDING = TransactionStatus.PENDING.value
PROCESSING = TransactionStatus.PROCESSING.value
COMPLETED = TransactionStatus.COMPLETED.value
FAILED = TransactionStatus.FAILED.value

ALLOWED_FROM = {
    PROCESSING: {PENDING},
    COMPLETED: {PROCESSING},
    FAILED: {PENDING, PROCESSING},
}
TERMINAL = {COMPLETED, FAILED}


@dataclass
class OnchainDepositParams:
    user_id: str
    chain: str
    tx_id: str
    log_index: int
    token_symbol: str
    amount: Decimal
    from_address: str | None = None
    block_number: int | None = None
    deposit_session_id: str | None = None
    allocation: dict | None = None


class TransactionStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, transaction_id: str, for_update: bool = False) -> Transaction | None:
        return self.db.get(Transaction, transaction_id, populate_existing=True, with_for_update=for_update or None)

    def require(self, transaction_id: str, for_update: bool = False) -> Transaction:
        tx = self.get(transaction_id, for_update=for_update)
        if tx is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return tx

    def get_by_payment_reference(self, reference: str) -> Transaction | None:
        return self.db.execute(
            select(Transaction).where(Transaction.payment_reference == reference)
        ).scalar_one_or_none()

    def get_by_onchain_ref(self, chain: str, tx_id: str, log_index: int) -> Transaction | None:
        return self.db.execute(
            select(Transaction).where(
                Transaction.chain == chain.lower(),
                Transaction.tx_id == normalize_tx_id(tx_id),
                Transaction.log_index == log_index,
            )
        ).scalar_one_or_none()

    def create_payment_deposit(
        self,
        user_id: str,
        amount_fiat: Decimal,
        exchange_rate: Decimal,
        reference: str,
        phone_number: str | None = None,
        allocation: dict | None = None,
        fiat_symbol: str = "KES",
    ) -> Transaction:
        if amount_fiat <= 0:
            raise ValidationError("Deposit amount must be positive")
        if exchange_rate <= 0:
            raise ValidationError("Exchange rate must be positive")
        existing = self.get_by_payment_reference(reference)
        if existing is not None:
            return existing
        usd_amount = amount_fiat / exchange_rate
        tx = Transaction(
            user_id=user_id,
            type=TransactionType.DEPOSIT.value,
            status=PENDING,
            source_asset=fiat_symbol,
            source_amount=amount_fiat,
            destination_asset="USDC",
            destination_amount=usd_amount,
            value_usd=usd_amount,
            exchange_rate=exchange_rate,
            allocation=allocation,
            payment_reference=reference,
            phone_number=phone_number,
        )
        self.db.add(tx)
        self.db.flush()
        logger.info("Payment deposit %s created (ref=%s, %s %s)", tx.id, reference, amount_fiat, fiat_symbol)
        return tx

    def create_onchain_deposit(self, params: OnchainDepositParams) -> Transaction:
        """Idempotent on (chain, tx_id, log_index). Returns the existing row on repeat calls."""
        chain = params.chain.lower()
        tx_id = normalize_tx_id(params.tx_id)
        existing = self.get_by_onchain_ref(chain, tx_id, params.log_index)
        if existing is not None:
            return existing
        tx = Transaction(
            user_id=params.user_id,
            type=TransactionType.DEPOSIT.value,
            status=PROCESSING,
            source_asset=params.token_symbol.upper(),
            source_amount=params.amount,
            destination_asset=params.token_symbol.upper(),
            destination_amount=params.amount,
            value_usd=params.amount,
            allocation=params.allocation,
            chain=chain,
            tx_id=tx_id,
            log_index=params.log_index,
            deposit_session_id=params.deposit_session_id,
            provider_metadata={"from_address": params.from_address, "block_number": params.block_number},
        )
        try:
            with self.db.begin_nested():
                self.db.add(tx)
        except IntegrityError:
            # lost the race to a concurrent creator
            existing = self.get_by_onchain_ref(chain, tx_id, params.log_index)
            if existing is None:
                raise
            return existing
        logger.info("On-chain deposit %s created (%s %s on %s)", tx.id, params.amount, tx.source_asset, chain)
        return tx

    def create_swap(
        self,
        user_id: str,
        from_asset: str,
        to_asset: str,
        amount: Decimal,
        chain: str,
        metadata: dict | None = None,
        value_usd: Decimal | None = None,
    ) -> Transaction:
        if amount <= 0:
            raise ValidationError("Swap amount must be positive")
        if from_asset.upper() == to_asset.upper():
            raise ValidationError("Swap assets must differ")
        tx = Transaction(
            user_id=user_id,
            type=TransactionType.SWAP.value,
            status=PENDING,
            source_asset=from_asset.upper(),
            source_amount=amount,
            destination_asset=to_asset.upper(),
            value_usd=value_usd,
            chain=chain.lower(),
            provider_metadata=dict(metadata or {}),
        )
        self.db.add(tx)
        self.db.flush()
        logger.info("Swap %s created: %s %s -> %s", tx.id, amount, tx.source_asset, tx.destination_asset)
        return tx

    def transition(self, transaction_id: str, target: str, **values) -> bool:
        values["status"] = target
        values.setdefault("updated_at", datetime.utcnow())
        result = self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status.in_(ALLOWED_FROM[target]))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        if moved:
            logger.info("Transaction %s -> %s", transaction_id, target)
        return moved

    def mark_processing(self, transaction_id: str, **values) -> bool:
        return self.transition(transaction_id, PROCESSING, **values)

    def mark_failed(self, transaction_id: str, reason: str) -> bool:
        moved = self.transition(transaction_id, FAILED, failure_reason=reason, failed_at=datetime.utcnow())
        if moved:
            logger.warning("Transaction %s failed: %s", transaction_id, reason)
        return moved

    def update_metadata(self, transaction_id: str, **changes) -> Transaction:
        tx = self.require(transaction_id, for_update=True)
        metadata = dict(tx.provider_metadata or {})
        metadata.update(changes)
        tx.provider_metadata = metadata
        tx.updated_at = datetime.utcnow()
        self.db.flush()
        return tx

    def list_rebalance_group(self, user_id: str, group_id: str) -> list[Transaction]:
        return list(
            self.db.execute(
                select(Transaction)
                .where(
                    Transaction.user_id == user_id,
                    Transaction.type == TransactionType.SWAP.value,
                    Transaction.provider_metadata["rebalance_group_id"].as_string() == group_id,
                )
                .order_by(Transaction.created_at)
            ).scalars()
        )

    def allocated_cash(self, user_id: str, chain: str) -> Decimal:
        total = self.db.execute(
            select(func.coalesce(func.sum(Transaction.destination_amount), 0)).where(
                Transaction.user_id == user_id,
                Transaction.type == TransactionType.DEPOSIT.value,
                Transaction.status == COMPLETED,
                Transaction.destination_asset == "USDC",
                Transaction.chain == chain.lower(),
            )
        ).scalar_one()
        return Decimal(str(total))
