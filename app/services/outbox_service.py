import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker

from app.core.clock import Clock, utcnow
from app.core.exceptions import InvalidPayloadError, StoreUnavailableError
from app.models.outbox import OutboxEntry, OutboxStatus
from app.monitoring.metrics import outbox_entries, outbox_reclaimed, outbox_claim_duration

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

Payload = Union[bytes, str, Dict[str, Any], List[Any], None]


def _encode_payload(payload: Payload) -> Optional[str]:
	if payload is None:
		return None
	if isinstance(payload, bytes):
		try:
			return payload.decode("utf-8")
		except UnicodeDecodeError as e:
			raise InvalidPayloadError(f"Outbox payload is not UTF-8 text: {e}") from e
	if isinstance(payload, str):
		return payload
	return json.dumps(payload, ensure_ascii=False, default=str)


def _truncated(message: Optional[str]) -> Optional[str]:
	if not message:
		return None
	return message[:MAX_ERROR_LENGTH]


class OutboxService:
	"""Durable outbox table access. Every method runs in its own transaction."""

	def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow, instance_id: str = "dw-outbox-relay"):
		self.session_factory = session_factory
		self.clock = clock
		self.instance_id = instance_id

	@contextmanager
	def _session(self):
		try:
			with self.session_factory() as db:
				yield db
		except (OperationalError, InterfaceError) as e:
			raise StoreUnavailableError(f"Outbox store unavailable: {e}") from e

	def enqueue(
			self,
			job_type: str,
			payload: Payload = None,
			available_at: Optional[datetime] = None,
			retry_count: int = 0,
			retry_of: Optional[UUID] = None,
	) -> OutboxEntry:
		"""
		Insert a PENDING entry; claimable once committed and available_at has passed.

		Payloads are stored as text: bytes must be UTF-8 (InvalidPayloadError
		otherwise) and dicts or lists are serialized to JSON.
		"""
		encoded = _encode_payload(payload)
		now = self.clock()
		with self._session() as db:
			entry = OutboxEntry(
				job_type=job_type,
				payload=encoded,
				status=OutboxStatus.PENDING,
				available_at=available_at or now,
				created_at=now,
				retry_count=retry_count,
				retry_of=retry_of,
			)
			db.add(entry)
			db.commit()
			db.refresh(entry)

		outbox_entries.labels(status="enqueued").inc()
		logger.info(f"Added to outbox: {job_type} ({entry.id}) available at {entry.available_at}")
		return entry

	def claim_oldest_pending(self, limit: int, now: Optional[datetime] = None) -> List[OutboxEntry]:
		"""
		Lock up to ``limit`` available PENDING rows, oldest first, and flip them to DISPATCHING.

		SELECT ... FOR UPDATE waits on rows held by a concurrent claimer instead of
		skipping them; once the other transaction commits those rows are no longer
		PENDING and drop out of the result.
		"""
		if limit <= 0:
			return []
		now = now or self.clock()
		started = time.perf_counter()
		with self._session() as db:
			query = (
				select(OutboxEntry)
				.where(
					OutboxEntry.status == OutboxStatus.PENDING,
					OutboxEntry.available_at <= now,
				)
				.order_by(OutboxEntry.created_at, OutboxEntry.id)
				.limit(limit)
				.with_for_update()
			)
			entries = list(db.execute(query).scalars().all())
			for entry in entries:
				entry.status = OutboxStatus.DISPATCHING
				entry.locked_at = now
				entry.locked_by = self.instance_id
			db.commit()

		outbox_claim_duration.observe(time.perf_counter() - started)
		if entries:
			logger.info(f"Claimed {len(entries)} outbox entries for {self.instance_id}")
		return entries

	def mark_dispatched(self, entry_id: UUID, locked_at: Optional[datetime] = None) -> bool:
		return self._finish(entry_id, OutboxStatus.DISPATCHED, None, locked_at)

	def mark_failed(self, entry_id: UUID, reason: Optional[str] = None, locked_at: Optional[datetime] = None) -> bool:
		return self._finish(entry_id, OutboxStatus.FAILED, reason, locked_at)

	def _finish(self, entry_id: UUID, status: OutboxStatus, reason: Optional[str], locked_at: Optional[datetime]) -> bool:
		"""
		Record a terminal status, but only on a row this instance still holds.

		Pass the ``locked_at`` of the claim to also reject a row the reaper handed
		back and this same instance claimed again since.
		"""
		now = self.clock()
		conditions = [
			OutboxEntry.id == entry_id,
			OutboxEntry.status == OutboxStatus.DISPATCHING,
			OutboxEntry.locked_by == self.instance_id,
		]
		if locked_at is not None:
			conditions.append(OutboxEntry.locked_at == locked_at)
		with self._session() as db:
			result = db.execute(
				update(OutboxEntry)
				.where(*conditions)
				.values(status=status, processed_at=now, last_error=_truncated(reason))
				.execution_options(synchronize_session=False)
			)
			db.commit()

		if result.rowcount == 0:
			# reclaimed by the reaper, and possibly claimed again elsewhere
			logger.warning(f"Outbox entry {entry_id} is no longer held by {self.instance_id}; {status.value} not recorded")
			return False
		outbox_entries.labels(status=status.value.lower()).inc()
		if status == OutboxStatus.FAILED:
			logger.error(f"Outbox entry {entry_id} marked as failed: {reason}")
		else:
			logger.debug(f"Outbox entry {entry_id} marked as dispatched")
		return True

	def enqueue_retry(self, entry: OutboxEntry, delay: timedelta) -> OutboxEntry:
		"""Append a fresh PENDING copy of a failed entry, claimable after ``delay``."""
		retry = self.enqueue(
			entry.job_type,
			entry.payload,
			available_at=self.clock() + delay,
			retry_count=entry.retry_count + 1,
			retry_of=entry.id,
		)
		outbox_entries.labels(status="retried").inc()
		logger.info(f"Outbox entry {entry.id} scheduled for retry #{retry.retry_count} as {retry.id}")
		return retry

	def reclaim_stale(self, stale_after: timedelta, now: Optional[datetime] = None) -> int:
		"""Return DISPATCHING rows locked before ``now - stale_after`` to PENDING."""
		now = now or self.clock()
		cutoff = now - stale_after
		with self._session() as db:
			result = db.execute(
				update(OutboxEntry)
				.where(
					OutboxEntry.status == OutboxStatus.DISPATCHING,
					OutboxEntry.locked_at < cutoff,
				)
				.values(status=OutboxStatus.PENDING, locked_at=None, locked_by=None)
				.execution_options(synchronize_session=False)
			)
			db.commit()

		count = result.rowcount or 0
		if count:
			outbox_reclaimed.inc(count)
			logger.warning(f"Reclaimed {count} outbox entries stuck in DISPATCHING since before {cutoff}")
		return count

	def get(self, entry_id: UUID) -> Optional[OutboxEntry]:
		with self._session() as db:
			return db.get(OutboxEntry, entry_id)

	def count_by_status(self) -> Dict[str, int]:
		with self._session() as db:
			rows = db.execute(
				select(OutboxEntry.status, func.count(OutboxEntry.id)).group_by(OutboxEntry.status)
			).all()
		counts = {status.value: 0 for status in OutboxStatus}
		for status, count in rows:
			counts[status.value] = count
		return counts
