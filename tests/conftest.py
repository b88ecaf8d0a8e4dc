import fnmatch
import time
from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest
import redis
from sqlalchemy import create_engine, event

from app.broker.memory import InMemoryBrokerBridge
from app.database import build_session_factory, init_db
from app.ingestion.pipeline import IngestionPipeline
from app.ingestion.registry import build_feed_registry
from app.services.outbox_service import OutboxService


class FakeClock:
	"""Deterministic UTC clock; tests move it forward explicitly."""

	def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)):
		self.now = start

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> datetime:
		self.now = self.now + timedelta(**kwargs)
		return self.now


class FakeCache:
	def __init__(self, prefix: str = "test:cache", error: Exception = None):
		self.prefix = prefix
		self.error = error
		self.evictions = 0

	def evict(self) -> int:
		if self.error is not None:
			raise self.error
		self.evictions += 1
		return 0


class FakeRedis:
	"""Just the commands the caches and trigger source use."""

	def __init__(self, down: bool = False):
		self.down = down
		self.values: Dict[str, str] = {}
		self.hashes: Dict[str, Dict[str, str]] = {}

	def _check(self):
		if self.down:
			raise redis.ConnectionError("redis is down")

	def get(self, key):
		self._check()
		return self.values.get(key)

	def set(self, key, value, ex=None):
		self._check()
		self.values[key] = value

	def scan_iter(self, match="*", count=None):
		self._check()
		return iter([k for k in list(self.values) + list(self.hashes) if fnmatch.fnmatch(k, match)])

	def delete(self, *keys):
		self._check()
		deleted = 0
		for key in keys:
			deleted += int(self.values.pop(key, None) is not None or self.hashes.pop(key, None) is not None)
		return deleted

	def hgetall(self, key):
		self._check()
		return dict(self.hashes.get(key, {}))

	def hset(self, key, mapping=None):
		self._check()
		self.hashes.setdefault(key, {}).update(mapping or {})
		return len(mapping or {})

	def ping(self):
		self._check()
		return True


@pytest.fixture
def engine(tmp_path):
	"""File-backed SQLite; BEGIN IMMEDIATE makes a second claimer wait like a row lock."""
	engine = create_engine(
		f"sqlite:///{tmp_path / 'dw_test.db'}",
		connect_args={"check_same_thread": False, "timeout": 30},
	)

	@event.listens_for(engine, "connect")
	def _no_implicit_begin(dbapi_connection, connection_record):
		dbapi_connection.isolation_level = None

	@event.listens_for(engine, "begin")
	def _begin_immediate(conn):
		conn.exec_driver_sql("BEGIN IMMEDIATE")

	init_db(engine)
	yield engine
	engine.dispose()


@pytest.fixture
def session_factory(engine):
	return build_session_factory(engine)


@pytest.fixture
def clock():
	return FakeClock()


@pytest.fixture
def outbox(session_factory, clock):
	return OutboxService(session_factory, clock=clock, instance_id="test-relay")


@pytest.fixture
def broker():
	return InMemoryBrokerBridge(partitions=3)


@pytest.fixture
def org_cache():
	return FakeCache("dw:org-tree")


@pytest.fixture
def pipeline(session_factory, clock, org_cache):
	registry = build_feed_registry(
		org_tree_cache=org_cache,
		holiday_cache=FakeCache("dw:holidays"),
		code_group_cache=FakeCache("dw:code-groups"),
	)
	return IngestionPipeline(session_factory, registry, clock=clock)


@pytest.fixture
def fake_redis():
	return FakeRedis()


def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
	deadline = time.monotonic() + timeout
	while time.monotonic() < deadline:
		if predicate():
			return True
		time.sleep(interval)
	return predicate()


@pytest.fixture
def wait_for():
	return _wait_for


@pytest.fixture
def make_cache():
	return FakeCache
