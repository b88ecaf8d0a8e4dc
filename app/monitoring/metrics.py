from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter
from fastapi.responses import Response

router = APIRouter()

# Outbox / dispatcher
outbox_entries = Counter(
	'outbox_entries_total',
	'Outbox entry transitions',
	['status']
)

outbox_reclaimed = Counter(
	'outbox_reclaimed_total',
	'DISPATCHING entries returned to PENDING by the reaper'
)

outbox_claim_duration = Histogram(
	'outbox_claim_seconds',
	'Time spent claiming a batch of outbox entries',
	buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# Broker
broker_messages_dropped = Counter(
	'broker_messages_dropped_total',
	'Consumed messages dropped before reaching the worker queue',
	['reason']
)

dead_letter_messages = Counter(
	'dead_letter_messages_total',
	'Messages written to or replayed from the dead-letter topic',
	['direction']
)

# Worker
worker_queue_depth = Gauge(
	'worker_queue_depth',
	'Jobs waiting in the in-process worker queue'
)

worker_jobs = Counter(
	'worker_jobs_total',
	'Jobs executed by the worker pool',
	['outcome']
)

# Ingestion
feed_batches = Counter(
	'feed_batches_total',
	'Feed batches by terminal status',
	['feed_type', 'status']
)

feed_records = Counter(
	'feed_records_total',
	'Feed records by outcome',
	['feed_type', 'outcome']
)

# Scheduler
scheduler_firings = Counter(
	'scheduler_firings_total',
	'Scheduled job firings',
	['job_id', 'outcome']
)


@router.get("/metrics")
async def metrics():
	"""Prometheus metrics endpoint"""
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
