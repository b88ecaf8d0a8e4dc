import os
import socket
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv
load_dotenv()


def _default_instance_id() -> str:
	return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
	# App
	APP_NAME: str = "DW Ingestion Service"
	APP_VERSION: str = "1.0.0"
	DEBUG: bool = False
	ENVIRONMENT: str = "development" # development, staging, production
	LOG_LEVEL: str = "INFO"
	INSTANCE_ID: str = _default_instance_id()

	# Database
	DATABASE_URL: str = "sqlite:///./dw_ingestion.db"
	DB_POOL_SIZE: int = 20
	DB_MAX_OVERFLOW: int = 40
	DB_POOL_PRE_PING: bool = True
	DB_ECHO: bool = False
	AUTO_CREATE_TABLES: bool = False

	# Redis
	REDIS_URL: str = "redis://localhost:6379/0"
	REDIS_POOL_SIZE: int = 10
	ORG_TREE_CACHE_PREFIX: str = "dw:org-tree"
	HOLIDAY_CACHE_PREFIX: str = "dw:holidays"
	CODE_GROUP_CACHE_PREFIX: str = "dw:code-groups"
	TRIGGER_KEY_PREFIX: str = "dw:schedule"

	# Broker
	BROKER_ENABLED: bool = False  # False = in-process transport
	KAFKA_BOOTSTRAP_SERVERS: str = "localhost:9092"
	KAFKA_CLIENT_ID: str = "dw-ingestion"
	KAFKA_CONSUMER_GROUP: str = "dw-ingestion-workers"
	INGESTION_TOPIC: str = "dw.ingestion.jobs"
	DEAD_LETTER_TOPIC: str = "dw.ingestion.jobs.dlq"
	PUBLISH_TIMEOUT_SECONDS: float = 10.0
	DEAD_LETTER_REPROCESS_ENABLED: bool = False
	DEAD_LETTER_REPROCESS_BATCH: int = 100
	DEAD_LETTER_MAX_REPLAYS: int = 3

	# Outbox / dispatcher
	OUTBOX_BATCH_SIZE: int = 50
	OUTBOX_STALE_AFTER_SECONDS: int = 300
	OUTBOX_MAX_RETRIES: int = 5
	OUTBOX_RETRY_INITIAL_SECONDS: float = 30.0
	OUTBOX_RETRY_MULTIPLIER: float = 2.0
	OUTBOX_RETRY_MAX_SECONDS: float = 3600.0

	# Worker
	WORKER_ENABLED: bool = True
	WORKER_CORE_POOL_SIZE: int = 2
	WORKER_MAX_POOL_SIZE: int = 4
	WORKER_QUEUE_CAPACITY: int = 100
	WORKER_ENQUEUE_TIMEOUT_SECONDS: Optional[float] = None  # None = block until space

	# Scheduler (5 fields, or 6 with a leading seconds column)
	SCHEDULER_ENABLED: bool = True
	SCHEDULER_TIMEZONE: str = "Asia/Seoul"
	OUTBOX_DISPATCH_SCHEDULE: str = "*/5 * * * * *"
	OUTBOX_REAPER_SCHEDULE: str = "0 * * * * *"
	DEAD_LETTER_REPROCESS_SCHEDULE: str = "*/10 * * * *"

	# Monitoring
	EXPOSE_METRICS: bool = True

	model_config = SettingsConfigDict(
		env_file=".env",
		env_file_encoding="utf-8",
		case_sensitive=True,
		extra="ignore",
	)


@lru_cache()
def get_settings() -> Settings:
	return Settings()


settings = get_settings()
