import logging
import queue
import threading
from typing import Callable, List, Optional, Tuple

from app.core.exceptions import QueueFullError
from app.monitoring.metrics import worker_queue_depth
from app.schemas.job import Job

logger = logging.getLogger(__name__)

MIN_CORE_POOL_SIZE = 1
MIN_QUEUE_CAPACITY = 10


class WorkerJobQueue:
	"""
	Bounded in-process queue drained by a pool of worker threads.

	``core_pool_size`` threads start with the queue; when the queue is full an
	extra thread is added, up to ``max_pool_size``, before ``enqueue`` blocks.
	With ``enqueue_timeout`` set, a producer that waited that long gets a
	QueueFullError instead. A dequeued job always runs to completion, and its
	``on_done`` callback runs after the handler returns or raises. A job lost
	before that point (process crash, stop without drain) never calls it.
	"""

	def __init__(
			self,
			handler: Callable[[Job], object],
			core_pool_size: int = 2,
			max_pool_size: int = 4,
			queue_capacity: int = 100,
			enqueue_timeout: Optional[float] = None,
			name: str = "dw-ingestion-worker",
	):
		self.handler = handler
		self.core_pool_size = max(MIN_CORE_POOL_SIZE, core_pool_size)
		self.max_pool_size = max(self.core_pool_size, max_pool_size)
		self.queue_capacity = max(MIN_QUEUE_CAPACITY, queue_capacity)
		self.enqueue_timeout = enqueue_timeout
		self.name = name
		self._queue: "queue.Queue[Tuple[Job, Optional[Callable[[], None]]]]" = queue.Queue(maxsize=self.queue_capacity)
		self._threads: List[threading.Thread] = []
		self._threads_lock = threading.Lock()
		self._stop = threading.Event()
		self._started = False

	@property
	def depth(self) -> int:
		return self._queue.qsize()

	@property
	def pool_size(self) -> int:
		with self._threads_lock:
			return len(self._threads)

	def start(self):
		with self._threads_lock:
			if self._started:
				return
			self._started = True
			self._stop.clear()
			for _ in range(self.core_pool_size):
				self._spawn()
		logger.info(
			f"Worker pool {self.name} started: core={self.core_pool_size} "
			f"max={self.max_pool_size} capacity={self.queue_capacity}"
		)

	def _spawn(self):
		thread = threading.Thread(
			target=self._work,
			name=f"{self.name}-{len(self._threads) + 1}",
			daemon=True,
		)
		self._threads.append(thread)
		thread.start()

	def enqueue(self, job: Job, on_done: Optional[Callable[[], None]] = None):
		if self._queue.full():
			with self._threads_lock:
				if self._started and len(self._threads) < self.max_pool_size:
					self._spawn()
		try:
			self._queue.put((job, on_done), block=True, timeout=self.enqueue_timeout)
		except queue.Full:
			raise QueueFullError(
				f"Worker queue full ({self.queue_capacity}) after {self.enqueue_timeout}s"
			) from None
		worker_queue_depth.set(self._queue.qsize())

	def _work(self):
		while not self._stop.is_set():
			try:
				job, on_done = self._queue.get(timeout=0.5)
			except queue.Empty:
				continue
			try:
				self.handler(job)
			except Exception as e:
				logger.exception(f"Worker failed on job {job.outbox_id} ({job.job_type}): {e}")
			finally:
				if on_done is not None:
					on_done()
				self._queue.task_done()
				worker_queue_depth.set(self._queue.qsize())

	def join(self):
		"""Block until every enqueued job has been processed."""
		self._queue.join()

	def stop(self, drain: bool = True, timeout: float = 30.0):
		if drain and self._started:
			self._queue.join()
		self._stop.set()
		with self._threads_lock:
			threads, self._threads = self._threads, []
			self._started = False
		for thread in threads:
			thread.join(timeout)
		logger.info(f"Worker pool {self.name} stopped")
