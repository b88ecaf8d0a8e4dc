import logging
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.exceptions import SynchronizationError
from app.ingestion.registry import FeedStrategy
from app.ingestion.validation import ValidationResult
from app.models.feed_batch import FeedStagedRecord, FeedValidationError

logger = logging.getLogger(__name__)


class StagingService:
    """Audit copy of a batch: every accepted row and every rejection, committed together."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def persist(self, batch_id: UUID, strategy: FeedStrategy, result: ValidationResult) -> int:
        try:
            with self.session_factory() as db:
                db.add_all([
                    FeedStagedRecord(
                        batch_id=batch_id,
                        feed_type=strategy.feed_type,
                        line_number=valid.line_number,
                        natural_key=valid.natural_key,
                        payload=valid.record.model_dump(mode="json", by_alias=True),
                    )
                    for valid in result.valid_records
                ])
                db.add_all([
                    FeedValidationError(
                        batch_id=batch_id,
                        line_number=error.line_number,
                        natural_key=error.natural_key,
                        error_code=error.error_code,
                        error_message=error.error_message,
                        raw_payload=error.raw_payload,
                    )
                    for error in result.errors
                ])
                db.commit()
        except SQLAlchemyError as e:
            raise SynchronizationError(f"Staging failed for batch {batch_id}: {e}") from e

        staged = result.total
        logger.debug(f"Staged {staged} rows for batch {batch_id}")
        return staged
