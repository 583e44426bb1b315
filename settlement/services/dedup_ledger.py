import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.models import ProcessedEvent

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def normalize_tx_id(tx_id: str) -> str:
    return tx_id.strip().lower()


class EventLedger:
    """Permanent record of external events that have been settled.

    The unique (chain, tx_id, log_index) constraint arbitrates concurrent
    deliveries of the same event. Rows are only ever inserted.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def is_consumed(self, chain: str, tx_id: str, log_index: int) -> bool:
        row = self.db.execute(
            select(ProcessedEvent.id).where(
                ProcessedEvent.chain == chain.lower(),
                ProcessedEvent.tx_id == normalize_tx_id(tx_id),
                ProcessedEvent.log_index == log_index,
            )
        ).first()
        return row is not None

    def mark_consumed(self, chain: str, tx_id: str, log_index: int) -> bool:
        self.claim(chain, tx_id, log_index)
        return True

    def claim(self, chain: str, tx_id: str, log_index: int) -> bool:
        """Insert the entry; True only for the caller whose insert created the row."""
        values = {
            "chain": chain.lower(),
            "tx_id": normalize_tx_id(tx_id),
            "log_index": log_index,
            "consumed_at": datetime.utcnow(),
        }
        insert = _UPSERT_INSERTS.get(self.db.get_bind().dialect.name)
        if insert is not None:
            stmt = insert(ProcessedEvent).values(**values).on_conflict_do_nothing(
                index_elements=["chain", "tx_id", "log_index"]
            )
            inserted = self.db.execute(stmt).rowcount == 1
        else:
            try:
                with self.db.begin_nested():
                    self.db.add(ProcessedEvent(**values))
                inserted = True
            except IntegrityError:
                inserted = False
        if not inserted:
            logger.info("Event already consumed chain=%s tx=%s log=%s", values["chain"], values["tx_id"], log_index)
        return inserted
