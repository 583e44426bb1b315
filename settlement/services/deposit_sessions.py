import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from settlement.errors import NotFoundError
from settlement.models import DepositSession, SessionStatus
from settlement.services.chain_client import TransferEvent
from settlement.services.dedup_ledger import normalize_tx_id

logger = logging.getLogger(__name__)

AWAITING = SessionStatus.AWAITING_TRANSFER.value
RECEIVED = SessionStatus.RECEIVED.value
CONFIRMED = SessionStatus.CONFIRMED.value
EXPIRED = SessionStatus.EXPIRED.value
FAILED = SessionStatus.FAILED.value

# target status -> statuses it may be entered from
ALLOWED_FROM = {
    RECEIVED: {AWAITING},
    CONFIRMED: {RECEIVED},
    EXPIRED: {AWAITING, RECEIVED},
    FAILED: {AWAITING, RECEIVED},
}
TERMINAL = {CONFIRMED, EXPIRED, FAILED}


def amount_in_bounds(amount: Decimal, min_amount: Decimal, max_amount: Decimal | None) -> bool:
    if amount < min_amount:
        return False
    return max_amount is None or amount <= max_amount


class DepositSessionStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def create(
        self,
        user_id: str,
        chain: str,
        token_symbol: str,
        token_address: str,
        deposit_address: str,
        created_at_block: int,
        min_amount: Decimal,
        max_amount: Decimal | None = None,
        expected_amount: Decimal | None = None,
        ttl_minutes: int = 60,
        now: datetime | None = None,
    ) -> DepositSession:
        now = now or datetime.utcnow()
        session = DepositSession(
            user_id=user_id,
            chain=chain.lower(),
            token_symbol=token_symbol.upper(),
            token_address=token_address,
            deposit_address=deposit_address,
            created_at_block=created_at_block,
            expected_amount=expected_amount,
            min_amount=min_amount,
            max_amount=max_amount,
            status=AWAITING,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
            updated_at=now,
        )
        self.db.add(session)
        self.db.flush()
        logger.info("Deposit session %s created for user %s on %s", session.id, user_id, session.chain)
        return session

    def get(self, session_id: str) -> DepositSession | None:
        return self.db.get(DepositSession, session_id, populate_existing=True)

    def require(self, session_id: str) -> DepositSession:
        session = self.get(session_id)
        if session is None:
            raise NotFoundError(f"Deposit session {session_id} not found")
        return session

    def transition(self, session_id: str, target: str, *extra_criteria, **values) -> bool:
        """Move to `target` only from an allowed status. False when the row was not in one."""
        values["status"] = target
        values.setdefault("updated_at", datetime.utcnow())
        result = self.db.execute(
            update(DepositSession)
            .where(
                DepositSession.id == session_id,
                DepositSession.status.in_(ALLOWED_FROM[target]),
                *extra_criteria,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        if moved:
            logger.info("Deposit session %s -> %s", session_id, target)
        return moved

    def bind_match(self, session_id: str, event: TransferEvent, now: datetime | None = None) -> bool:
        return self.transition(
            session_id,
            RECEIVED,
            DepositSession.matched_tx_id.is_(None),
            matched_tx_id=normalize_tx_id(event.tx_id),
            matched_log_index=event.log_index,
            matched_from_address=event.from_address,
            matched_amount=event.amount,
            matched_block_number=event.block_number,
            received_at=now or datetime.utcnow(),
        )

    def record_confirmations(self, session_id: str, confirmations: int) -> None:
        self.db.execute(
            update(DepositSession)
            .where(DepositSession.id == session_id, DepositSession.status == RECEIVED)
            .values(confirmations=confirmations, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    def mark_confirmed(self, session_id: str, transaction_id: str, now: datetime | None = None) -> bool:
        return self.transition(session_id, CONFIRMED, transaction_id=transaction_id, confirmed_at=now or datetime.utcnow())

    def mark_expired(self, session_id: str) -> bool:
        return self.transition(session_id, EXPIRED)

    def mark_failed(self, session_id: str, reason: str) -> bool:
        return self.transition(session_id, FAILED, failure_reason=reason)

    def flag_for_review(self, session_id: str, reason: str) -> bool:
        result = self.db.execute(
            update(DepositSession)
            .where(DepositSession.id == session_id, DepositSession.review_reason.is_(None))
            .values(review_reason=reason, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.warning("Deposit session %s flagged for review: %s", session_id, reason)
            return True
        return False

    def list_for_review(self) -> list[DepositSession]:
        return list(
            self.db.execute(
                select(DepositSession)
                .where(DepositSession.review_reason.is_not(None), DepositSession.status.not_in(TERMINAL))
                .order_by(DepositSession.created_at)
            ).scalars()
        )

    def expire_stale(self, now: datetime | None = None) -> list[str]:
        now = now or datetime.utcnow()
        candidates = self.db.execute(
            select(DepositSession.id).where(DepositSession.status == AWAITING, DepositSession.expires_at <= now)
        ).scalars().all()
        expired = [
            session_id
            for session_id in candidates
            if self.transition(session_id, EXPIRED, DepositSession.expires_at <= now, updated_at=now)
        ]
        if expired:
            logger.info("Expired %s stale deposit sessions", len(expired))
        return expired

