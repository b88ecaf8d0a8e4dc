from datetime import timedelta

import pytest

from app.broker.base import MessagePublisher
from app.core.exceptions import PublishRejectedError, PublishTimeoutError, StoreUnavailableError
from app.models.outbox import OutboxStatus
from app.schemas.job import Job
from app.services.dispatcher import OutboxDispatcher, OutboxReaper
from app.services.outbox_service import OutboxService

TOPIC = "dw.ingestion.jobs"


class RecordingPublisher(MessagePublisher):
	def __init__(self, error: Exception = None):
		self.error = error
		self.published = []

	def publish(self, topic, key, value, headers=None):
		if self.error is not None:
			raise self.error
		self.published.append((topic, key, value))


class UnavailableOutbox:
	def claim_oldest_pending(self, limit, now=None):
		raise StoreUnavailableError("database is down")

	def reclaim_stale(self, stale_after, now=None):
		raise StoreUnavailableError("database is down")


@pytest.fixture
def publisher():
	return RecordingPublisher()


def make_dispatcher(outbox, publisher, clock, **kwargs):
	return OutboxDispatcher(outbox, publisher, TOPIC, batch_size=10, clock=clock, **kwargs)


def test_publish_acknowledged_marks_dispatched(outbox, publisher, clock):
	"""Test an acknowledged publish is keyed by outbox id and recorded"""
	entry = outbox.enqueue("FEED_INGESTION", '{"feedType": "HOLIDAY"}')

	summary = make_dispatcher(outbox, publisher, clock).run_once()

	assert summary.claimed == 1
	assert summary.dispatched == 1
	topic, key, value = publisher.published[0]
	assert topic == TOPIC
	assert key == str(entry.id)
	job = Job.from_message(value)
	assert job.outbox_id == str(entry.id)
	assert job.job_type == "FEED_INGESTION"
	assert job.payload == '{"feedType": "HOLIDAY"}'
	assert outbox.get(entry.id).status == OutboxStatus.DISPATCHED


def test_publish_timeout_leaves_row_for_reaper(outbox, clock):
	"""Test a timeout keeps the row DISPATCHING until the reaper reclaims it"""
	entry = outbox.enqueue("FEED_INGESTION", "x")
	dispatcher = make_dispatcher(outbox, RecordingPublisher(PublishTimeoutError("no ack")), clock)

	summary = dispatcher.run_once()

	assert summary.unacknowledged == 1
	assert outbox.get(entry.id).status == OutboxStatus.DISPATCHING

	clock.advance(seconds=301)
	assert OutboxReaper(outbox, 300, clock=clock).run_once() == 1
	assert outbox.get(entry.id).status == OutboxStatus.PENDING

	ok = RecordingPublisher()
	assert make_dispatcher(outbox, ok, clock).run_once().dispatched == 1
	assert ok.published[0][1] == str(entry.id)


def test_rejection_marks_failed_and_schedules_retry(outbox, clock):
	"""Test a definitive rejection fails the row and appends a delayed copy"""
	entry = outbox.enqueue("FEED_INGESTION", "x")
	dispatcher = make_dispatcher(outbox, RecordingPublisher(PublishRejectedError("too large")), clock)

	summary = dispatcher.run_once()

	assert summary.failed == 1
	assert summary.retried == 1
	failed = outbox.get(entry.id)
	assert failed.status == OutboxStatus.FAILED
	assert failed.last_error == "too large"
	assert outbox.count_by_status()["PENDING"] == 1

	# the copy waits out its backoff
	assert make_dispatcher(outbox, RecordingPublisher(), clock).run_once().claimed == 0
	clock.advance(seconds=31)
	claimed = outbox.claim_oldest_pending(10)
	assert len(claimed) == 1
	assert claimed[0].retry_of == entry.id
	assert claimed[0].retry_count == 1


def test_rejection_after_max_retries_is_final(outbox, clock):
	outbox.enqueue("FEED_INGESTION", "x", retry_count=2)
	dispatcher = make_dispatcher(outbox, RecordingPublisher(PublishRejectedError("nope")), clock, max_retries=2)

	summary = dispatcher.run_once()

	assert summary.failed == 1
	assert summary.retried == 0
	assert outbox.count_by_status() == {"PENDING": 0, "DISPATCHING": 0, "DISPATCHED": 0, "FAILED": 1}


def test_transport_error_is_not_fatal(outbox, clock):
	entry = outbox.enqueue("FEED_INGESTION", "x")
	dispatcher = make_dispatcher(outbox, RecordingPublisher(ConnectionError("broker unreachable")), clock)

	summary = dispatcher.run_once()

	assert summary.unacknowledged == 1
	assert outbox.get(entry.id).status == OutboxStatus.DISPATCHING


def test_store_unavailable_skips_cycle(publisher, clock):
	"""Test the polling loop survives a store outage"""
	summary = make_dispatcher(UnavailableOutbox(), publisher, clock).run_once()

	assert summary.claimed == 0
	assert publisher.published == []
	assert OutboxReaper(UnavailableOutbox(), 300, clock=clock).run_once() == 0


def test_compute_backoff_is_exponential_and_capped(outbox, publisher, clock):
	dispatcher = make_dispatcher(
		outbox, publisher, clock,
		retry_initial_seconds=30, retry_multiplier=2, retry_max_seconds=3600,
	)

	assert dispatcher.compute_backoff(0) == timedelta(seconds=30)
	assert dispatcher.compute_backoff(1) == timedelta(seconds=60)
	assert dispatcher.compute_backoff(3) == timedelta(seconds=240)
	assert dispatcher.compute_backoff(10) == timedelta(seconds=3600)


def test_batch_size_bounds_each_cycle(outbox, publisher, clock):
	for _ in range(15):
		outbox.enqueue("FEED_INGESTION", "x")
		clock.advance(seconds=1)

	dispatcher = make_dispatcher(outbox, publisher, clock)
	assert dispatcher.run_once().dispatched == 10
	assert dispatcher.run_once().dispatched == 5
	assert dispatcher.run_once().claimed == 0


class SlowRejectingPublisher(MessagePublisher):
	"""Rejects only after another relay has taken the row over."""

	def __init__(self, while_publishing):
		self.while_publishing = while_publishing

	def publish(self, topic, key, value, headers=None):
		self.while_publishing()
		raise PublishRejectedError("too large")


def test_late_rejection_leaves_new_owner_alone(session_factory, clock):
	"""Test a relay that lost its claim records nothing and schedules no retry"""
	relay_a = OutboxService(session_factory, clock=clock, instance_id="relay-a")
	relay_b = OutboxService(session_factory, clock=clock, instance_id="relay-b")
	entry = relay_a.enqueue("FEED_INGESTION", "x")

	def taken_over():
		clock.advance(seconds=301)
		relay_b.reclaim_stale(timedelta(seconds=300))
		relay_b.claim_oldest_pending(1)

	summary = make_dispatcher(relay_a, SlowRejectingPublisher(taken_over), clock).run_once()

	assert summary.failed == 0
	assert summary.retried == 0
	row = relay_a.get(entry.id)
	assert row.status == OutboxStatus.DISPATCHING
	assert row.locked_by == "relay-b"
	assert relay_a.count_by_status()["PENDING"] == 0
