import logging
import threading
from typing import Optional

from app.broker.base import BrokerBridge, MessageSource
from app.core.exceptions import PublishRejectedError, RetriableError
from app.monitoring.metrics import dead_letter_messages
from app.schemas.job import REPLAY_COUNT_HEADER, Job, read_replay_count

logger = logging.getLogger(__name__)


class DeadLetterPublisher:
	"""Parks jobs the worker could not execute on the dead-letter topic."""

	def __init__(self, publisher: BrokerBridge, topic: str):
		self.publisher = publisher
		self.topic = topic

	def publish(self, job: Job, reason: str) -> bool:
		key = job.outbox_id or job.job_type
		headers = {REPLAY_COUNT_HEADER: str(job.replay_count).encode("ascii")}
		try:
			self.publisher.publish(self.topic, key, job.to_message(), headers=headers)
		except (RetriableError, PublishRejectedError) as e:
			logger.error(f"Could not dead-letter job {key} ({reason}): {e}")
			return False
		dead_letter_messages.labels(direction="out").inc()
		logger.warning(f"Job {key} dead-lettered after {job.replay_count} replays: {reason}")
		return True


class DeadLetterReprocessor:
	"""
	Replays dead-lettered messages onto the main topic, byte for byte.

	Runs as its own scheduled job so it can be switched on and off without
	touching normal consumption. A failed republish closes the subscription so
	the next run resumes from the last committed offset.

	Every replay bumps the ``dw-replay-count`` header. A message that comes back
	after ``max_replays`` replays is left parked on the dead-letter topic.
	"""

	def __init__(
			self,
			broker: BrokerBridge,
			dead_letter_topic: str,
			main_topic: str,
			group_id: str,
			batch_size: int = 100,
			poll_timeout: float = 0.5,
			max_replays: int = 3,
	):
		self.broker = broker
		self.dead_letter_topic = dead_letter_topic
		self.main_topic = main_topic
		self.group_id = group_id
		self.batch_size = max(1, batch_size)
		self.poll_timeout = poll_timeout
		self.max_replays = max(0, max_replays)
		self._source: Optional[MessageSource] = None
		self._lock = threading.Lock()

	def run_once(self) -> int:
		replayed = parked = 0
		with self._lock:
			if self._source is None:
				self._source = self.broker.subscribe(self.dead_letter_topic, self.group_id)

			while replayed + parked < self.batch_size:
				message = self._source.poll(self.poll_timeout)
				if message is None:
					break
				replays = read_replay_count(message.headers)
				if replays >= self.max_replays:
					logger.error(
						f"Dead-lettered message {message.key} at offset {message.offset} "
						f"left parked after {replays} replays"
					)
					self._source.commit(message)
					parked += 1
					continue
				try:
					self.broker.publish(
						self.main_topic,
						message.key or "",
						message.value,
						headers={REPLAY_COUNT_HEADER: str(replays + 1).encode("ascii")},
					)
				except (RetriableError, PublishRejectedError) as e:
					logger.error(f"Dead-letter replay stopped at offset {message.offset}: {e}")
					self.close()
					break
				self._source.commit(message)
				replayed += 1

		if replayed:
			dead_letter_messages.labels(direction="replayed").inc(replayed)
			logger.info(f"Replayed {replayed} dead-lettered messages to {self.main_topic}")
		if parked:
			dead_letter_messages.labels(direction="parked").inc(parked)
		return replayed

	def close(self):
		if self._source is not None:
			self._source.close()
			self._source = None
