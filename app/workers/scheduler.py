import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import redis
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger

from app.core.exceptions import ScheduleConfigurationError
from app.monitoring.metrics import scheduler_firings

logger = logging.getLogger(__name__)

FALLBACK_DELAY = timedelta(seconds=60)
TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TriggerDescriptor:
	job_id: str
	enabled: bool
	schedule_expression: str
	timezone: str = "UTC"


class TriggerSource(Protocol):
	def get(self, job_id: str) -> Optional[TriggerDescriptor]:
		...


class SettingsTriggerSource:
	"""Descriptors from configuration, changeable in-process through ``update``."""

	def __init__(self, descriptors: Dict[str, TriggerDescriptor]):
		self._descriptors = dict(descriptors)
		self._lock = threading.Lock()

	def get(self, job_id: str) -> Optional[TriggerDescriptor]:
		with self._lock:
			return self._descriptors.get(job_id)

	def update(self, job_id: str, **changes) -> TriggerDescriptor:
		with self._lock:
			current = self._descriptors.get(job_id) or TriggerDescriptor(job_id, False, "")
			descriptor = replace(current, **changes)
			self._descriptors[job_id] = descriptor
		logger.info(f"Trigger {job_id} updated: {descriptor}")
		return descriptor


class RedisTriggerSource:
	"""
	Per-job overrides in a Redis hash ``<prefix>:<job_id>`` with the fields
	``enabled``, ``schedule`` and ``timezone``. Missing fields, or Redis being
	unreachable, fall back to the wrapped source.
	"""

	def __init__(self, client_provider: Callable[[], redis.Redis], fallback: TriggerSource, prefix: str = "dw:schedule"):
		self.client_provider = client_provider
		self.fallback = fallback
		self.prefix = prefix

	def key(self, job_id: str) -> str:
		return f"{self.prefix}:{job_id}"

	def get(self, job_id: str) -> Optional[TriggerDescriptor]:
		default = self.fallback.get(job_id)
		try:
			fields = self.client_provider().hgetall(self.key(job_id))
		except redis.RedisError as e:
			logger.warning(f"Trigger overrides for {job_id} unavailable, using defaults: {e}")
			return default
		if not fields:
			return default

		base = default or TriggerDescriptor(job_id, False, "")
		enabled = fields.get("enabled")
		return replace(
			base,
			enabled=base.enabled if enabled is None else enabled.strip().lower() in TRUE_VALUES,
			schedule_expression=fields.get("schedule") or base.schedule_expression,
			timezone=fields.get("timezone") or base.timezone,
		)

	def set(self, job_id: str, enabled: Optional[bool] = None, schedule: Optional[str] = None, timezone: Optional[str] = None):
		mapping = {}
		if enabled is not None:
			mapping["enabled"] = "true" if enabled else "false"
		if schedule is not None:
			build_cron_trigger(schedule, timezone or "UTC")
			mapping["schedule"] = schedule
		if timezone is not None:
			mapping["timezone"] = timezone
		if mapping:
			self.client_provider().hset(self.key(job_id), mapping=mapping)
			logger.info(f"Trigger override for {job_id} stored: {mapping}")


def build_cron_trigger(expression: str, timezone: str) -> CronTrigger:
	"""5 fields is plain crontab; 6 fields carries a leading seconds column."""
	try:
		tz = ZoneInfo(timezone)
	except (ZoneInfoNotFoundError, ValueError) as e:
		raise ScheduleConfigurationError(f"Unknown timezone {timezone!r}") from e

	fields = (expression or "").split()
	try:
		if len(fields) == 5:
			return CronTrigger.from_crontab(" ".join(fields), timezone=tz)
		if len(fields) == 6:
			second, minute, hour, day, month, day_of_week = fields
			return CronTrigger(
				second=second, minute=minute, hour=hour,
				day=day, month=month, day_of_week=day_of_week,
				timezone=tz,
			)
	except ValueError as e:
		raise ScheduleConfigurationError(f"Invalid schedule {expression!r}: {e}") from e
	raise ScheduleConfigurationError(f"Schedule {expression!r} must have 5 or 6 fields")


class DynamicTrigger(BaseTrigger):
	"""
	Trigger that looks up its descriptor every time APScheduler asks for the
	next fire time, so a new expression applies from the following occurrence.
	A missing or broken descriptor is retried after FALLBACK_DELAY; the job is
	never unscheduled.
	"""

	def __init__(self, job_id: str, source: TriggerSource):
		self.job_id = job_id
		self.source = source
		self._cached: Optional[Tuple[Tuple[str, str], CronTrigger]] = None

	def _cron(self, descriptor: TriggerDescriptor) -> CronTrigger:
		signature = (descriptor.schedule_expression, descriptor.timezone)
		if self._cached is None or self._cached[0] != signature:
			self._cached = (signature, build_cron_trigger(*signature))
		return self._cached[1]

	def get_next_fire_time(self, previous_fire_time: Optional[datetime], now: datetime) -> Optional[datetime]:
		try:
			descriptor = self.source.get(self.job_id)
			if descriptor is None:
				logger.warning(f"No trigger descriptor for {self.job_id}; checking again in {FALLBACK_DELAY}")
				return now + FALLBACK_DELAY
			return self._cron(descriptor).get_next_fire_time(previous_fire_time, now)
		except ScheduleConfigurationError as e:
			logger.error(f"Trigger {self.job_id}: {e}; checking again in {FALLBACK_DELAY}")
			return now + FALLBACK_DELAY

	def __str__(self):
		return f"dynamic[{self.job_id}]"

	def __repr__(self):
		return f"<DynamicTrigger (job_id={self.job_id!r})>"


class DynamicScheduler:
	"""
	One APScheduler job per entry of ``jobs``, each driven by a DynamicTrigger.

	The job body reads the descriptor again when it fires and skips the run if
	the job is disabled, so switching a job off takes effect on its next firing.
	"""

	def __init__(
			self,
			source: TriggerSource,
			jobs: Dict[str, Callable[[], object]],
			scheduler: Optional[BackgroundScheduler] = None,
			timezone: str = "UTC",
			misfire_grace_time: int = 30,
	):
		self.source = source
		self.jobs = dict(jobs)
		self.scheduler = scheduler or BackgroundScheduler(timezone=ZoneInfo(timezone))
		self.misfire_grace_time = misfire_grace_time
		self._registered = False

	def register(self):
		if self._registered:
			return
		for job_id in self.jobs:
			self.scheduler.add_job(
				self.fire,
				trigger=DynamicTrigger(job_id, self.source),
				args=[job_id],
				id=job_id,
				name=job_id,
				coalesce=True,
				max_instances=1,
				misfire_grace_time=self.misfire_grace_time,
				replace_existing=True,
			)
			logger.info(f"Scheduled job {job_id} registered")
		self._registered = True

	def start(self):
		self.register()
		if not self.scheduler.running:
			self.scheduler.start()
			logger.info(f"Scheduler started with {len(self.jobs)} jobs")

	def fire(self, job_id: str) -> bool:
		descriptor = self.source.get(job_id)
		if descriptor is None or not descriptor.enabled:
			scheduler_firings.labels(job_id=job_id, outcome="skipped").inc()
			logger.info(f"Scheduled job {job_id} is disabled; skipping this firing")
			return False

		try:
			self.jobs[job_id]()
		except Exception as e:
			scheduler_firings.labels(job_id=job_id, outcome="failed").inc()
			logger.exception(f"Scheduled job {job_id} failed: {e}")
			return True
		scheduler_firings.labels(job_id=job_id, outcome="succeeded").inc()
		return True

	def shutdown(self, wait: bool = True):
		if self.scheduler.running:
			self.scheduler.shutdown(wait=wait)
			logger.info("Scheduler stopped")
