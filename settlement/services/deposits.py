import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from settlement.errors import InvalidTransition, NotFoundError, ValidationError
from settlement.jobs.tasks import DEPOSIT_COMPLETION, ONCHAIN_DEPOSIT_CONFIRMATION
from settlement.models import DepositSession, Transaction
from settlement.money import require_decimal
from settlement.services.accounts import AccountService
from settlement.services.catalog import CASH_SYMBOL, CATEGORIES
from settlement.services.chain_client import TransferEvent
from settlement.services.dedup_ledger import EventLedger
from settlement.services.deposit_sessions import (
    CONFIRMED,
    RECEIVED,
    TERMINAL,
    DepositSessionStore,
    amount_in_bounds,
)
from settlement.services.reconciler import BalanceReconciler
from settlement.services.transactions import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    OnchainDepositParams,
    TransactionStore,
)

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS = {"success", "succeeded", "completed", "paid"}


@dataclass
class DepositIntentStatus:
    session_id: str
    status: str
    tx_id: str | None = None
    amount: Decimal | None = None
    confirmations: int = 0
    transaction_id: str | None = None


@dataclass
class SettleOutcome:
    confirmed: bool
    transaction_id: str | None = None
    race_lost: bool = False


class DepositService:
    def __init__(self, db: Session, ctx) -> None:
        self.db = db
        self.ctx = ctx
        self.sessions = DepositSessionStore(db)
        self.transactions = TransactionStore(db)

    def resolve_bounds(
        self,
        expected_amount: Decimal | None,
        min_amount: Decimal | None,
        max_amount: Decimal | None,
    ) -> tuple[Decimal, Decimal | None]:
        settings = self.ctx.settings
        tolerance = settings.deposit_amount_tolerance
        if expected_amount is not None:
            if expected_amount <= 0:
                raise ValidationError("Expected amount must be positive")
            if min_amount is None:
                min_amount = expected_amount * (1 - tolerance)
            if max_amount is None:
                max_amount = expected_amount * (1 + tolerance)
        if min_amount is None:
            min_amount = settings.min_deposit_amount
        if min_amount <= 0:
            raise ValidationError("Minimum amount must be positive")
        if max_amount is not None and max_amount < min_amount:
            raise ValidationError("Maximum amount must not be below the minimum")
        if expected_amount is not None and not amount_in_bounds(expected_amount, min_amount, max_amount):
            raise ValidationError("Expected amount must lie within the accepted range")
        return min_amount, max_amount

    def create_deposit_intent(
        self,
        user_id: str,
        chain: str | None = None,
        token: str = CASH_SYMBOL,
        expected_amount=None,
        min_amount=None,
        max_amount=None,
    ) -> DepositSession:
        chain = (chain or self.ctx.settings.default_chain).lower()
        if not self.ctx.chain_clients.supports(chain):
            raise ValidationError(f"Unsupported chain: {chain}")
        token_address = self.ctx.catalog.token_address(token, chain)
        bounds = self.resolve_bounds(
            None if expected_amount is None else require_decimal(expected_amount, "expected_amount"),
            None if min_amount is None else require_decimal(min_amount, "min_amount"),
            None if max_amount is None else require_decimal(max_amount, "max_amount"),
        )
        wallet = AccountService(self.db).require_wallet(user_id)
        created_at_block = self.ctx.chain_clients.get(chain).get_latest_block()
        session = self.sessions.create(
            user_id=user_id,
            chain=chain,
            token_symbol=token,
            token_address=token_address,
            deposit_address=wallet.address,
            created_at_block=created_at_block,
            min_amount=bounds[0],
            max_amount=bounds[1],
            expected_amount=None if expected_amount is None else require_decimal(expected_amount),
            ttl_minutes=self.ctx.settings.deposit_session_ttl_min,
            now=self.ctx.clock(),
        )
        self.enqueue_confirmation(session)
        self.db.commit()
        return session

    def enqueue_confirmation(self, session: DepositSession) -> None:
        deadline = session.expires_at
        grace = self.ctx.settings.deposit_confirm_grace_sec
        if grace:
            deadline = deadline + timedelta(seconds=grace)
        self.ctx.queue.enqueue(
            self.ctx.tasks[ONCHAIN_DEPOSIT_CONFIRMATION],
            session.id,
            {"session_id": session.id},
            deadline=deadline,
            db=self.db,
        )

    def confirm_deposit_intent(self, session_id: str, refresh: bool = False) -> DepositIntentStatus:
        session = self.sessions.require(session_id)
        if refresh and session.status not in TERMINAL:
            self.enqueue_confirmation(session)
            self.db.commit()
        return DepositIntentStatus(
            session_id=session.id,
            status=session.status,
            tx_id=session.matched_tx_id,
            amount=session.matched_amount,
            confirmations=session.confirmations or 0,
            transaction_id=session.transaction_id,
        )

    def find_match(self, session: DepositSession, events: list[TransferEvent]) -> TransferEvent | None:
        ledger = EventLedger(self.db)
        for event in events:
            if event.to_address.lower() != session.deposit_address.lower():
                continue
            if event.block_number < session.created_at_block:
                continue
            if not amount_in_bounds(event.amount, session.min_amount, session.max_amount):
                continue
            if ledger.is_consumed(session.chain, event.tx_id, event.log_index):
                continue
            return event
        return None

    def settle_onchain_deposit(self, session_id: str) -> SettleOutcome:
        """Ledger claim, transaction, reconciliation and CONFIRMED commit together or not at all."""
        session = self.sessions.require(session_id)
        if session.status != RECEIVED:
            return SettleOutcome(confirmed=session.status == CONFIRMED, transaction_id=session.transaction_id)
        ledger = EventLedger(self.db)
        try:
            if not ledger.claim(session.chain, session.matched_tx_id, session.matched_log_index):
                self.db.rollback()
                return self._handle_lost_race(session)
            recorded = self.transactions.get_by_onchain_ref(
                session.chain, session.matched_tx_id, session.matched_log_index
            )
            if recorded is not None and recorded.deposit_session_id != session.id:
                # a directly reported deposit owns this event and settles it itself
                self.db.rollback()
                return self._handle_lost_race(session)
            tx = self.transactions.create_onchain_deposit(
                OnchainDepositParams(
                    user_id=session.user_id,
                    chain=session.chain,
                    tx_id=session.matched_tx_id,
                    log_index=session.matched_log_index,
                    token_symbol=session.token_symbol,
                    amount=session.matched_amount,
                    from_address=session.matched_from_address,
                    block_number=session.matched_block_number,
                    deposit_session_id=session.id,
                )
            )
            BalanceReconciler(self.db, self.ctx.catalog).apply_completed_transfer(
                session.user_id,
                session.token_symbol,
                session.token_symbol,
                session.matched_amount,
                session.matched_amount,
                tx.id,
                settlement_reference=session.matched_tx_id,
                commit=False,
            )
            if not self.sessions.mark_confirmed(session.id, tx.id, now=self.ctx.clock()):
                current = self.sessions.require(session.id)
                raise InvalidTransition("DepositSession", session.id, current.status, "confirmed")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Deposit session %s confirmed as transaction %s", session.id, tx.id)
        return SettleOutcome(confirmed=True, transaction_id=tx.id)

    def _handle_lost_race(self, session: DepositSession) -> SettleOutcome:
        winner = self.transactions.get_by_onchain_ref(session.chain, session.matched_tx_id, session.matched_log_index)
        winner_id = winner.id if winner else "unknown"
        reason = f"event {session.matched_tx_id}:{session.matched_log_index} already settled by transaction {winner_id}"
        if self.sessions.flag_for_review(session.id, reason):
            self.db.commit()
            self.ctx.monitor.alert(
                "deposit_race_lost",
                f"Deposit session {session.id} matched an event settled elsewhere",
                session_id=session.id,
                user_id=session.user_id,
                winner_transaction_id=winner_id,
            )
        return SettleOutcome(confirmed=False, transaction_id=winner.id if winner else None, race_lost=True)

    def create_onchain_deposit(self, params: OnchainDepositParams) -> Transaction:
        """Record a transfer reported by the caller and queue its settlement.

        Repeat calls by the same user return the existing deposit. An event that
        is already settled, or recorded for someone else, is rejected.
        """
        params.amount = require_decimal(params.amount)
        if params.amount <= 0:
            raise ValidationError("Deposit amount must be positive")
        self.ctx.catalog.get(params.token_symbol)
        AccountService(self.db).require_portfolio(params.user_id)
        ref = f"{params.chain.lower()}:{params.tx_id}:{params.log_index}"
        existing = self.transactions.get_by_onchain_ref(params.chain, params.tx_id, params.log_index)
        if existing is None and EventLedger(self.db).is_consumed(params.chain, params.tx_id, params.log_index):
            raise ValidationError(f"Event {ref} has already been settled")
        tx = existing or self.transactions.create_onchain_deposit(params)
        if tx.user_id != params.user_id or tx.deposit_session_id is not None:
            self.db.rollback()
            raise ValidationError(f"Event {ref} is already recorded by another deposit")
        if tx.status == PROCESSING:
            self.ctx.queue.enqueue(
                self.ctx.tasks[DEPOSIT_COMPLETION], tx.id, {"transaction_id": tx.id}, db=self.db
            )
        self.db.commit()
        return tx

    def expire_session(self, session_id: str) -> bool:
        expired = self.sessions.mark_expired(session_id)
        self.db.commit()
        return expired

    def fail_session(self, session_id: str, reason: str) -> bool:
        failed = self.sessions.mark_failed(session_id, reason)
        self.db.commit()
        return failed

    def create_payment_deposit(
        self,
        user_id: str,
        amount_fiat,
        exchange_rate,
        reference: str,
        phone_number: str | None = None,
        allocation: dict | None = None,
    ) -> Transaction:
        AccountService(self.db).require_portfolio(user_id)
        if allocation:
            self._validate_allocation(allocation)
        tx = self.transactions.create_payment_deposit(
            user_id,
            require_decimal(amount_fiat, "amount"),
            require_decimal(exchange_rate, "exchange_rate"),
            reference,
            phone_number=phone_number,
            allocation=allocation,
        )
        self.db.commit()
        return tx

    def _validate_allocation(self, allocation: dict) -> None:
        unknown = set(allocation) - set(CATEGORIES)
        if unknown:
            raise ValidationError(f"Unknown allocation categories: {sorted(unknown)}")
        total = sum((require_decimal(value) for value in allocation.values()), Decimal(0))
        if total != 100:
            raise ValidationError(f"Allocation must sum to 100, got {total}")

    def handle_payment_callback(
        self,
        external_ref: str,
        amount,
        phone_or_account: str | None,
        status: str,
        receipt: str | None = None,
    ) -> Transaction:
        tx = self.transactions.get_by_payment_reference(external_ref)
        if tx is None:
            raise NotFoundError(f"No deposit for payment reference {external_ref}")
        if tx.status in (COMPLETED, FAILED):
            logger.info("Duplicate callback for %s ignored (status=%s)", external_ref, tx.status)
            return tx
        if str(status).lower() not in PAYMENT_SUCCESS:
            self.transactions.mark_failed(tx.id, f"payment {status}")
            self.db.commit()
            return self.transactions.require(tx.id)
        paid = require_decimal(amount, "amount")
        if paid != tx.source_amount:
            self.transactions.mark_failed(tx.id, f"paid {paid} but expected {tx.source_amount}")
            self.db.commit()
            return self.transactions.require(tx.id)
        if tx.status == PENDING:
            self.transactions.mark_processing(tx.id, payment_receipt=receipt, phone_number=phone_or_account or tx.phone_number)
        self.ctx.queue.enqueue(
            self.ctx.tasks[DEPOSIT_COMPLETION], tx.id, {"transaction_id": tx.id}, db=self.db
        )
        self.db.commit()
        return self.transactions.require(tx.id)

    def list_for_review(self) -> list[DepositSession]:
        return self.sessions.list_for_review()

    def expire_stale_sessions(self) -> list[str]:
        expired = self.sessions.expire_stale(self.ctx.clock())
        self.db.commit()
        return expired
