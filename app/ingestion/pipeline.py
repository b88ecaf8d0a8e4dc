import hashlib
import logging
from contextlib import contextmanager
from typing import Callable, List, Optional, Union
from uuid import UUID

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker

from app.core.clock import Clock, utcnow
from app.core.exceptions import FeedParseError, StoreUnavailableError, SynchronizationError
from app.ingestion.parsers import ParsedRecord, parse_feed
from app.ingestion.registry import FeedRegistry, FeedStrategy, resolve_strategy
from app.ingestion.staging import StagingService
from app.ingestion.synchronizer import RecordSynchronizer, SyncResult
from app.ingestion.validation import FeedValidator, ModelFeedValidator
from app.models.feed_batch import BatchStatus, FeedBatch
from app.monitoring.metrics import feed_batches, feed_records
from app.schemas.feed import FeedDocument, PipelineResult

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE = 2000


class IngestionPipeline:
    """
    Runs one feed through parse -> validate -> stage -> synchronize -> evict.

    The FeedBatch row moves RECEIVED -> PROCESSING -> COMPLETED | FAILED. A parse
    or synchronize error fails the batch with that first error as its message,
    and so does any other error once the batch row exists;
    rejected rows only add to ``failed_records``. Nothing is retried here: a
    FAILED batch is resubmitted as a new outbox entry, which is safe because the
    synchronize step is an upsert.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: FeedRegistry,
        validator: Optional[FeedValidator] = None,
        parser: Callable[[FeedDocument], List[ParsedRecord]] = parse_feed,
        staging: Optional[StagingService] = None,
        synchronizer: Optional[RecordSynchronizer] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.validator = validator or ModelFeedValidator()
        self.parser = parser
        self.staging = staging or StagingService(session_factory)
        self.synchronizer = synchronizer or RecordSynchronizer(session_factory, clock)
        self.clock = clock

    @contextmanager
    def _session(self):
        try:
            with self.session_factory() as db:
                yield db
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(f"Batch store unavailable: {e}") from e

    def ingest(
        self,
        document: FeedDocument,
        outbox_id: Optional[Union[str, UUID]] = None,
        raw_payload: Optional[Union[str, bytes]] = None,
    ) -> PipelineResult:
        strategy = resolve_strategy(self.registry, document.feed_type)
        batch = self._open_batch(document, outbox_id, raw_payload)
        logger.info(
            f"Batch {batch.id} received: {document.feed_type.value} from {document.source_name} "
            f"({document.format}, business date {document.business_date})"
        )

        try:
            self._update(batch, status=BatchStatus.PROCESSING)

            try:
                parsed = self.parser(document)
            except FeedParseError as e:
                return self._fail(batch, f"Parse failed: {e}")

            validation = self.validator.validate(parsed, strategy)
            total = len(parsed)
            failed = len(validation.errors)

            try:
                self.staging.persist(batch.id, strategy, validation)
                synced = self.synchronizer.synchronize(strategy, validation.valid_records)
            except SynchronizationError as e:
                return self._fail(batch, str(e), total_records=total, failed_records=failed)
        except Exception as e:
            # recorded on the batch; only errors before it exists reach the caller
            logger.exception(f"Batch {batch.id} crashed: {e}")
            return self._fail(batch, f"Unexpected error: {e}")

        self._evict(strategy, batch.id)
        return self._complete(batch, strategy, total, failed, synced)

    def _open_batch(self, document: FeedDocument, outbox_id, raw_payload) -> FeedBatch:
        if raw_payload is None:
            raw_payload = document.model_dump_json(by_alias=True)
        if isinstance(raw_payload, str):
            raw_payload = raw_payload.encode("utf-8")

        now = self.clock()
        with self._session() as db:
            batch = FeedBatch(
                feed_type=document.feed_type,
                source_name=document.source_name,
                business_date=document.business_date,
                format=document.format,
                checksum=hashlib.sha256(raw_payload).hexdigest(),
                outbox_id=UUID(str(outbox_id)) if outbox_id else None,
                status=BatchStatus.RECEIVED,
                received_at=now,
                created_at=now,
            )
            db.add(batch)
            db.commit()
            db.refresh(batch)
            return batch

    def _update(self, batch: FeedBatch, **values) -> FeedBatch:
        with self._session() as db:
            row = db.get(FeedBatch, batch.id)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = self.clock()
            db.commit()
            db.refresh(row)
            return row

    def _evict(self, strategy: FeedStrategy, batch_id: UUID):
        for cache in strategy.caches:
            try:
                cache.evict()
            except Exception as e:
                logger.warning(f"Batch {batch_id}: cache eviction for {getattr(cache, 'prefix', cache)} failed: {e}")

    def _complete(self, batch: FeedBatch, strategy: FeedStrategy, total: int, failed: int, synced: SyncResult) -> PipelineResult:
        row = self._update(
            batch,
            status=BatchStatus.COMPLETED,
            total_records=total,
            inserted_records=synced.inserted,
            updated_records=synced.updated,
            failed_records=failed,
            completed_at=self.clock(),
        )
        feed_type = strategy.feed_type.value
        feed_batches.labels(feed_type=feed_type, status=BatchStatus.COMPLETED.value).inc()
        feed_records.labels(feed_type=feed_type, outcome="inserted").inc(synced.inserted)
        feed_records.labels(feed_type=feed_type, outcome="updated").inc(synced.updated)
        feed_records.labels(feed_type=feed_type, outcome="failed").inc(failed)
        logger.info(
            f"Batch {row.id} completed: total={total} inserted={synced.inserted} "
            f"updated={synced.updated} failed={failed}"
        )
        return _result(row)

    def _fail(self, batch: FeedBatch, message: str, **counts) -> PipelineResult:
        row = self._update(
            batch,
            status=BatchStatus.FAILED,
            error_message=message[:MAX_ERROR_MESSAGE],
            completed_at=self.clock(),
            **counts,
        )
        feed_batches.labels(feed_type=row.feed_type.value, status=BatchStatus.FAILED.value).inc()
        logger.error(f"Batch {row.id} failed: {message}")
        return _result(row)


def _result(batch: FeedBatch) -> PipelineResult:
    return PipelineResult(
        batch_id=str(batch.id),
        feed_type=batch.feed_type,
        status=batch.status.value,
        total_records=batch.total_records or 0,
        inserted_records=batch.inserted_records or 0,
        updated_records=batch.updated_records or 0,
        failed_records=batch.failed_records or 0,
        error_message=batch.error_message,
    )
