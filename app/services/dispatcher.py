import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.broker.base import MessagePublisher
from app.core.clock import Clock, utcnow
from app.core.exceptions import PublishRejectedError, PublishTimeoutError, RetriableError
from app.models.outbox import OutboxEntry
from app.schemas.job import Job
from app.services.outbox_service import OutboxService

logger = logging.getLogger(__name__)


@dataclass
class DispatchSummary:
	claimed: int = 0
	dispatched: int = 0
	failed: int = 0
	retried: int = 0
	unacknowledged: int = 0


class OutboxDispatcher:
	"""
	Moves claimed outbox rows onto the broker.

	One cycle claims a bounded batch and publishes each entry keyed by its outbox
	id. An acknowledged publish marks the row DISPATCHED, a definitive rejection
	marks it FAILED (plus a delayed retry copy while attempts remain), and a
	timeout or transport error leaves it DISPATCHING for the reaper.
	"""

	def __init__(
			self,
			outbox: OutboxService,
			publisher: MessagePublisher,
			topic: str,
			batch_size: int = 50,
			max_retries: int = 5,
			retry_initial_seconds: float = 30.0,
			retry_multiplier: float = 2.0,
			retry_max_seconds: float = 3600.0,
			clock: Clock = utcnow,
	):
		self.outbox = outbox
		self.publisher = publisher
		self.topic = topic
		self.batch_size = max(1, batch_size)
		self.max_retries = max(0, max_retries)
		self.retry_initial_seconds = max(1.0, retry_initial_seconds)
		self.retry_multiplier = max(1.0, retry_multiplier)
		self.retry_max_seconds = max(self.retry_initial_seconds, retry_max_seconds)
		self.clock = clock

	def compute_backoff(self, retry_count: int) -> timedelta:
		seconds = self.retry_initial_seconds * (self.retry_multiplier ** max(0, retry_count))
		return timedelta(seconds=min(seconds, self.retry_max_seconds))

	def run_once(self, now: Optional[datetime] = None) -> DispatchSummary:
		summary = DispatchSummary()
		try:
			entries = self.outbox.claim_oldest_pending(self.batch_size, now or self.clock())
		except RetriableError as e:
			logger.error(f"Outbox claim skipped this cycle: {e}")
			return summary

		summary.claimed = len(entries)
		for entry in entries:
			self._dispatch(entry, summary)

		if entries:
			logger.info(
				f"Outbox dispatch: {summary.dispatched} dispatched, {summary.failed} failed, "
				f"{summary.unacknowledged} awaiting reaper"
			)
		return summary

	def _dispatch(self, entry: OutboxEntry, summary: DispatchSummary):
		message = Job.from_outbox(entry).to_message()
		try:
			self.publisher.publish(self.topic, str(entry.id), message)
		except PublishRejectedError as e:
			self._fail(entry, str(e), summary)
			return
		except PublishTimeoutError as e:
			logger.warning(f"Publish of outbox entry {entry.id} not acknowledged: {e}")
			summary.unacknowledged += 1
			return
		except Exception as e:
			logger.exception(f"Transport error publishing outbox entry {entry.id}: {e}")
			summary.unacknowledged += 1
			return

		try:
			if self.outbox.mark_dispatched(entry.id, locked_at=entry.locked_at):
				summary.dispatched += 1
		except RetriableError as e:
			# published but not recorded; the reaper re-publishes and consumers dedupe
			logger.error(f"Could not record dispatch of {entry.id}: {e}")
			summary.unacknowledged += 1

	def _fail(self, entry: OutboxEntry, reason: str, summary: DispatchSummary):
		try:
			if not self.outbox.mark_failed(entry.id, reason, locked_at=entry.locked_at):
				return
			summary.failed += 1
			if entry.retry_count < self.max_retries:
				self.outbox.enqueue_retry(entry, self.compute_backoff(entry.retry_count))
				summary.retried += 1
			else:
				logger.error(f"Outbox entry {entry.id} permanently failed after {entry.retry_count} retries")
		except RetriableError as e:
			logger.error(f"Could not record failure of {entry.id}: {e}")


class OutboxReaper:
	"""Returns rows stuck in DISPATCHING past the staleness threshold to PENDING."""

	def __init__(self, outbox: OutboxService, stale_after_seconds: int = 300, clock: Clock = utcnow):
		self.outbox = outbox
		self.stale_after = timedelta(seconds=max(1, stale_after_seconds))
		self.clock = clock

	def run_once(self, now: Optional[datetime] = None) -> int:
		try:
			return self.outbox.reclaim_stale(self.stale_after, now or self.clock())
		except RetriableError as e:
			logger.error(f"Outbox reaper skipped this cycle: {e}")
			return 0
