import logging
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, utcnow
from app.core.exceptions import SynchronizationError
from app.ingestion.registry import FeedStrategy
from app.ingestion.validation import ValidRecord

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    inserted: int = 0
    updated: int = 0


class RecordSynchronizer:
    """
    Upserts valid records into the authoritative table by natural key.

    Each record commits in its own transaction holding only that key's row, so
    unrelated records never wait on each other. A key that already exists is
    counted as updated even when no attribute changed; replaying a batch
    therefore reports the same split as any later run over the same rows.
    """

    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def synchronize(self, strategy: FeedStrategy, records: Sequence[ValidRecord]) -> SyncResult:
        result = SyncResult()
        for valid in records:
            try:
                inserted = self._upsert(strategy, valid)
            except IntegrityError:
                # a concurrent run inserted the key first; apply ours as an update
                logger.info(f"{strategy.feed_type.value} key {valid.natural_key} raced with another writer, retrying")
                try:
                    inserted = self._upsert(strategy, valid)
                except SQLAlchemyError as e:
                    raise SynchronizationError(f"Upsert of {valid.natural_key} failed: {e}") from e
            except SQLAlchemyError as e:
                raise SynchronizationError(f"Upsert of {valid.natural_key} failed: {e}") from e

            if inserted:
                result.inserted += 1
            else:
                result.updated += 1
        return result

    def _upsert(self, strategy: FeedStrategy, valid: ValidRecord) -> bool:
        with self.session_factory() as db:
            inserted = self._apply(db, strategy, valid)
            db.commit()
            return inserted

    def _apply(self, db: Session, strategy: FeedStrategy, valid: ValidRecord) -> bool:
        table = strategy.table
        key = strategy.key_filter(valid.record)
        columns = strategy.to_columns(valid.record)
        existing = db.execute(
            select(table).filter_by(**key).with_for_update()
        ).scalar_one_or_none()

        if existing is None:
            now = self.clock()
            db.add(table(**key, **columns, created_at=now, updated_at=now))
            db.flush()
            return True

        changed = False
        for name, value in columns.items():
            if getattr(existing, name) != value:
                setattr(existing, name, value)
                changed = True
        if changed:
            existing.updated_at = self.clock()
        return False
