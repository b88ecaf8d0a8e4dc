import logging
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from app.broker.dead_letter import DeadLetterPublisher
from app.core.exceptions import MalformedMessageError, UnknownJobTypeError
from app.ingestion.pipeline import IngestionPipeline
from app.monitoring.metrics import worker_jobs
from app.schemas.feed import FeedDocument, PipelineResult
from app.schemas.job import Job, JobType

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], object]


class FeedIngestionJobHandler:
	"""FEED_INGESTION: the payload is a feed document, run through the pipeline."""

	def __init__(self, pipeline: IngestionPipeline):
		self.pipeline = pipeline

	def __call__(self, job: Job) -> PipelineResult:
		if not job.payload:
			raise MalformedMessageError(f"Job {job.outbox_id} has no feed document")
		try:
			document = FeedDocument.model_validate_json(job.payload)
		except ValidationError as e:
			raise MalformedMessageError(f"Job {job.outbox_id} payload is not a feed document: {e}") from e
		return self.pipeline.ingest(document, outbox_id=job.outbox_id, raw_payload=job.payload)


class JobRouter:
	"""
	Worker entry point: hands each job to the handler registered for its type.

	Jobs that cannot be executed at all (unknown type, undecodable payload, or a
	handler crash before the batch state machine took over) go to the
	dead-letter topic with the original envelope. Once the pipeline has opened a
	batch, every failure is recorded on that batch instead.
	"""

	def __init__(self, handlers: Dict[str, JobHandler], dead_letter: Optional[DeadLetterPublisher] = None):
		self.handlers = dict(handlers)
		self.dead_letter = dead_letter

	def __call__(self, job: Job):
		handler = self.handlers.get(job.job_type)
		if handler is None:
			self._reject(job, UnknownJobTypeError(f"No handler for job type {job.job_type}"))
			return None

		try:
			result = handler(job)
		except Exception as e:
			logger.exception(f"Job {job.outbox_id} ({job.job_type}) failed: {e}")
			self._reject(job, e)
			return None

		if isinstance(result, PipelineResult) and result.status == "FAILED":
			worker_jobs.labels(outcome="batch_failed").inc()
			logger.warning(f"Job {job.outbox_id} ({job.job_type}) finished with failed batch {result.batch_id}")
		else:
			worker_jobs.labels(outcome="succeeded").inc()
			logger.info(f"Job {job.outbox_id} ({job.job_type}) finished")
		return result

	def _reject(self, job: Job, error: Exception):
		worker_jobs.labels(outcome="dead_lettered" if self.dead_letter else "failed").inc()
		if self.dead_letter is None:
			logger.error(f"Job {job.outbox_id} dropped, no dead-letter topic: {error}")
			return
		self.dead_letter.publish(job, f"{type(error).__name__}: {error}")


def build_job_router(pipeline: IngestionPipeline, dead_letter: Optional[DeadLetterPublisher] = None) -> JobRouter:
	return JobRouter(
		{JobType.FEED_INGESTION.value: FeedIngestionJobHandler(pipeline)},
		dead_letter=dead_letter,
	)
