import logging
import threading
from typing import Callable, Optional

import redis
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.broker.base import BrokerBridge
from app.broker.consumer import ConsumerLoop, JobConsumer
from app.broker.dead_letter import DeadLetterPublisher, DeadLetterReprocessor
from app.broker.kafka import KafkaBrokerBridge
from app.broker.memory import InMemoryBrokerBridge
from app.config import Settings, settings
from app.core.clock import Clock, utcnow
from app.core.redis import close_redis, get_redis
from app.database import build_engine, build_session_factory, close_db, init_db
from app.ingestion.cache import OrganizationTreeCache, RedisPrefixCache
from app.ingestion.pipeline import IngestionPipeline
from app.ingestion.registry import build_feed_registry
from app.services.dispatcher import OutboxDispatcher, OutboxReaper
from app.services.feed_service import FeedSubmissionService
from app.services.outbox_service import OutboxService
from app.workers.job_handlers import JobRouter, build_job_router
from app.workers.job_queue import WorkerJobQueue
from app.workers.scheduled_tasks import build_scheduled_jobs, default_trigger_descriptors
from app.workers.scheduler import DynamicScheduler, RedisTriggerSource, SettingsTriggerSource

logger = logging.getLogger(__name__)


def build_broker(config: Settings) -> BrokerBridge:
	"""Chosen once at startup: Kafka when BROKER_ENABLED, otherwise in-process."""
	if config.BROKER_ENABLED:
		return KafkaBrokerBridge(
			config.KAFKA_BOOTSTRAP_SERVERS,
			client_id=config.KAFKA_CLIENT_ID,
			publish_timeout=config.PUBLISH_TIMEOUT_SECONDS,
		)
	logger.info("Broker disabled; using the in-memory transport")
	return InMemoryBrokerBridge()


class IngestionRuntime:
	"""Every long-lived component of one process, wired explicitly from Settings."""

	def __init__(
			self,
			config: Settings,
			engine: Engine,
			session_factory: sessionmaker,
			broker: BrokerBridge,
			outbox: OutboxService,
			submissions: FeedSubmissionService,
			dispatcher: OutboxDispatcher,
			reaper: OutboxReaper,
			pipeline: IngestionPipeline,
			router: JobRouter,
			worker_queue: WorkerJobQueue,
			consumer_loop: ConsumerLoop,
			reprocessor: DeadLetterReprocessor,
			trigger_source: RedisTriggerSource,
			scheduler: DynamicScheduler,
	):
		self.config = config
		self.engine = engine
		self.session_factory = session_factory
		self.broker = broker
		self.outbox = outbox
		self.submissions = submissions
		self.dispatcher = dispatcher
		self.reaper = reaper
		self.pipeline = pipeline
		self.router = router
		self.worker_queue = worker_queue
		self.consumer_loop = consumer_loop
		self.reprocessor = reprocessor
		self.trigger_source = trigger_source
		self.scheduler = scheduler
		self._lock = threading.Lock()
		self._started = False

	@classmethod
	def build(
			cls,
			config: Settings = settings,
			engine: Optional[Engine] = None,
			broker: Optional[BrokerBridge] = None,
			redis_provider: Callable[[], redis.Redis] = get_redis,
			clock: Clock = utcnow,
	) -> "IngestionRuntime":
		engine = engine or build_engine(config)
		session_factory = build_session_factory(engine)
		broker = broker or build_broker(config)

		outbox = OutboxService(session_factory, clock=clock, instance_id=config.INSTANCE_ID)
		dispatcher = OutboxDispatcher(
			outbox,
			broker,
			config.INGESTION_TOPIC,
			batch_size=config.OUTBOX_BATCH_SIZE,
			max_retries=config.OUTBOX_MAX_RETRIES,
			retry_initial_seconds=config.OUTBOX_RETRY_INITIAL_SECONDS,
			retry_multiplier=config.OUTBOX_RETRY_MULTIPLIER,
			retry_max_seconds=config.OUTBOX_RETRY_MAX_SECONDS,
			clock=clock,
		)
		reaper = OutboxReaper(outbox, config.OUTBOX_STALE_AFTER_SECONDS, clock=clock)

		registry = build_feed_registry(
			org_tree_cache=OrganizationTreeCache(redis_provider, config.ORG_TREE_CACHE_PREFIX),
			holiday_cache=RedisPrefixCache(redis_provider, config.HOLIDAY_CACHE_PREFIX),
			code_group_cache=RedisPrefixCache(redis_provider, config.CODE_GROUP_CACHE_PREFIX),
		)
		pipeline = IngestionPipeline(session_factory, registry, clock=clock)
		router = build_job_router(pipeline, DeadLetterPublisher(broker, config.DEAD_LETTER_TOPIC))

		worker_queue = WorkerJobQueue(
			router,
			core_pool_size=config.WORKER_CORE_POOL_SIZE,
			max_pool_size=config.WORKER_MAX_POOL_SIZE,
			queue_capacity=config.WORKER_QUEUE_CAPACITY,
			enqueue_timeout=config.WORKER_ENQUEUE_TIMEOUT_SECONDS,
		)
		consumer_loop = ConsumerLoop(
			lambda: broker.subscribe(config.INGESTION_TOPIC, config.KAFKA_CONSUMER_GROUP),
			JobConsumer(worker_queue.enqueue).handle,
			drain=worker_queue.join,
		)
		reprocessor = DeadLetterReprocessor(
			broker,
			config.DEAD_LETTER_TOPIC,
			config.INGESTION_TOPIC,
			group_id=f"{config.KAFKA_CONSUMER_GROUP}-dlq",
			batch_size=config.DEAD_LETTER_REPROCESS_BATCH,
			max_replays=config.DEAD_LETTER_MAX_REPLAYS,
		)

		trigger_source = RedisTriggerSource(
			redis_provider,
			SettingsTriggerSource(default_trigger_descriptors(config)),
			prefix=config.TRIGGER_KEY_PREFIX,
		)
		scheduler = DynamicScheduler(
			trigger_source,
			build_scheduled_jobs(dispatcher, reaper, reprocessor),
			timezone=config.SCHEDULER_TIMEZONE,
		)

		return cls(
			config=config,
			engine=engine,
			session_factory=session_factory,
			broker=broker,
			outbox=outbox,
			submissions=FeedSubmissionService(outbox),
			dispatcher=dispatcher,
			reaper=reaper,
			pipeline=pipeline,
			router=router,
			worker_queue=worker_queue,
			consumer_loop=consumer_loop,
			reprocessor=reprocessor,
			trigger_source=trigger_source,
			scheduler=scheduler,
		)

	@property
	def started(self) -> bool:
		return self._started

	def start(self):
		with self._lock:
			if self._started:
				return
			if self.config.AUTO_CREATE_TABLES:
				init_db(self.engine)
			if self.config.WORKER_ENABLED:
				self.worker_queue.start()
				self.consumer_loop.start()
			if self.config.SCHEDULER_ENABLED:
				self.scheduler.start()
			self._started = True
		logger.info(f"Ingestion runtime {self.config.INSTANCE_ID} started")

	def stop(self):
		with self._lock:
			if not self._started:
				return
			self.scheduler.shutdown(wait=True)
			self.consumer_loop.stop()
			self.worker_queue.stop(drain=True)
			self.reprocessor.close()
			self.broker.close()
			close_redis()
			close_db(self.engine)
			self._started = False
		logger.info(f"Ingestion runtime {self.config.INSTANCE_ID} stopped")
