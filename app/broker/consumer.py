import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple

from app.broker.base import BrokerMessage, MessageSource
from app.core.exceptions import MalformedMessageError, RetriableError
from app.monitoring.metrics import broker_messages_dropped
from app.schemas.job import Job, read_replay_count

logger = logging.getLogger(__name__)

Ack = Callable[[], None]


def _noop():
	pass


class JobConsumer:
	"""
	Per-message entry point of the consume path.

	A message that does not decode to a job envelope with a ``jobType`` is
	logged and dropped; it never reaches the worker queue. Its outbox row is
	untouched and can be reconciled by hand.

	``ack`` travels with the job and is called by the worker once the job has
	run, so the broker offset only advances past work that actually finished.
	"""

	def __init__(self, enqueue: Callable[[Job, Ack], None]):
		self.enqueue = enqueue

	def handle(self, message: BrokerMessage, ack: Ack = _noop) -> bool:
		try:
			job = Job.from_message(message.value, replay_count=read_replay_count(message.headers))
		except MalformedMessageError as e:
			broker_messages_dropped.labels(reason="malformed").inc()
			logger.warning(
				f"Dropping malformed message key={message.key} "
				f"partition={message.partition} offset={message.offset}: {e}"
			)
			ack()
			return False

		if job.outbox_id and message.key and job.outbox_id != message.key:
			logger.warning(f"Message key {message.key} does not match outboxId {job.outbox_id}")
		self.enqueue(job, ack)
		return True


class InFlightOffsets:
	"""
	Delivered-but-unfinished messages of one subscription, per partition.

	``committable`` returns, per partition, the last message of the finished
	prefix. A message that never finishes holds back every later offset of its
	partition, so after a crash the broker redelivers it and whatever followed.
	"""

	def __init__(self):
		self._lock = threading.Lock()
		self._partitions: Dict[Tuple[str, Optional[int]], "OrderedDict[int, list]"] = {}

	def track(self, message: BrokerMessage) -> Ack:
		slot = [message, False]
		with self._lock:
			lane = self._partitions.setdefault((message.topic, message.partition), OrderedDict())
			lane[message.offset] = slot

		def ack():
			with self._lock:
				slot[1] = True

		return ack

	@property
	def pending(self) -> int:
		with self._lock:
			return sum(1 for lane in self._partitions.values() for _, done in lane.values() if not done)

	def committable(self) -> List[BrokerMessage]:
		ready = []
		with self._lock:
			for lane in self._partitions.values():
				last = None
				while lane:
					message, done = next(iter(lane.values()))
					if not done:
						break
					lane.popitem(last=False)
					last = message
				if last is not None:
					ready.append(last)
		return ready


class ConsumerLoop:
	"""
	Polls a subscription on a background thread and commits finished work.

	Each message is tracked from poll until the handler's ack; offsets are
	committed from this thread only, for the finished prefix of each partition.
	Retriable handler errors (a full worker queue with an enqueue timeout) are
	retried in place so the message is neither skipped nor committed early.

	``drain`` runs after polling stops and before the last commit, so a
	graceful stop can wait for queued jobs instead of leaving them to be
	redelivered.
	"""

	def __init__(
			self,
			source_factory: Callable[[], MessageSource],
			handler: Callable[[BrokerMessage, Ack], object],
			name: str = "job-consumer",
			poll_timeout: float = 1.0,
			retry_delay: float = 1.0,
			drain: Optional[Callable[[], None]] = None,
	):
		self.source_factory = source_factory
		self.handler = handler
		self.name = name
		self.poll_timeout = poll_timeout
		self.retry_delay = retry_delay
		self.drain = drain
		self.offsets = InFlightOffsets()
		self._stop = threading.Event()
		self._thread: Optional[threading.Thread] = None

	@property
	def running(self) -> bool:
		return self._thread is not None and self._thread.is_alive()

	def start(self):
		if self.running:
			return
		self._stop.clear()
		self.offsets = InFlightOffsets()
		self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
		self._thread.start()
		logger.info(f"Consumer loop {self.name} started")

	def stop(self, timeout: float = 30.0):
		self._stop.set()
		if self._thread is not None:
			self._thread.join(timeout)
			self._thread = None
		logger.info(f"Consumer loop {self.name} stopped")

	def _run(self):
		source = self.source_factory()
		offsets = self.offsets
		try:
			while not self._stop.is_set():
				self._commit_finished(source, offsets)
				try:
					message = source.poll(self.poll_timeout)
				except Exception as e:
					logger.exception(f"Consumer loop {self.name} poll failed: {e}")
					self._stop.wait(self.retry_delay)
					continue
				if message is None:
					continue
				self._deliver(message, offsets.track(message))
		finally:
			try:
				if self.drain is not None:
					self.drain()
				self._commit_finished(source, offsets)
				if offsets.pending:
					logger.warning(f"Consumer loop {self.name} stopping with {offsets.pending} unfinished messages")
			finally:
				source.close()

	def _commit_finished(self, source: MessageSource, offsets: InFlightOffsets):
		for message in offsets.committable():
			try:
				source.commit(message)
			except Exception as e:
				# a later commit covers this offset; otherwise it is redelivered
				logger.error(f"Consumer loop {self.name} commit of offset {message.offset} failed: {e}")

	def _deliver(self, message: BrokerMessage, ack: Ack):
		while not self._stop.is_set():
			try:
				self.handler(message, ack)
				return
			except RetriableError as e:
				logger.warning(f"Consumer loop {self.name} backing off: {e}")
				self._stop.wait(self.retry_delay)
			except Exception as e:
				logger.exception(f"Consumer loop {self.name} failed on offset {message.offset}: {e}")
				ack()
				return
