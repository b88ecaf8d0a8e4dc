import logging
import threading
import time
import zlib
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from app.broker.base import BrokerBridge, BrokerMessage, Headers, MessageSource

logger = logging.getLogger(__name__)


class InMemoryBrokerBridge(BrokerBridge):
	"""
	In-process transport with Kafka-like semantics.

	Topics are split into partitions chosen by key hash, so one key always lands
	in one ordered lane. Consumer groups track committed offsets per partition;
	a new subscription resumes from the last commit, which redelivers anything
	polled but never committed.
	"""

	def __init__(self, partitions: int = 3):
		self.partitions = max(1, partitions)
		self._logs: Dict[str, List[List[BrokerMessage]]] = {}
		self._committed: Dict[Tuple[str, str], List[int]] = {}
		self._cond = threading.Condition()

	def _topic_log(self, topic: str) -> List[List[BrokerMessage]]:
		if topic not in self._logs:
			self._logs[topic] = [[] for _ in range(self.partitions)]
		return self._logs[topic]

	def partition_for(self, key: Optional[str]) -> int:
		if key is None:
			return 0
		return zlib.crc32(key.encode("utf-8")) % self.partitions

	def publish(self, topic: str, key: str, value: bytes, headers: Optional[Headers] = None) -> None:
		with self._cond:
			partition = self.partition_for(key)
			lane = self._topic_log(topic)[partition]
			lane.append(BrokerMessage(
				topic=topic,
				key=key,
				value=value,
				partition=partition,
				offset=len(lane),
				headers=dict(headers or {}),
			))
			self._cond.notify_all()

	def subscribe(self, topic: str, group_id: str) -> MessageSource:
		with self._cond:
			self._topic_log(topic)
			committed = self._committed.setdefault((group_id, topic), [0] * self.partitions)
			return _InMemorySource(self, topic, group_id, list(committed))

	def messages(self, topic: str) -> List[BrokerMessage]:
		"""Every message ever published to ``topic``, partition by partition."""
		with self._cond:
			return [message for lane in self._topic_log(topic) for message in lane]

	def _commit(self, group_id: str, message: BrokerMessage):
		with self._cond:
			committed = self._committed.setdefault((group_id, message.topic), [0] * self.partitions)
			committed[message.partition] = max(committed[message.partition], message.offset + 1)


class _InMemorySource(MessageSource):

	def __init__(self, broker: InMemoryBrokerBridge, topic: str, group_id: str, positions: List[int]):
		self.broker = broker
		self.topic = topic
		self.group_id = group_id
		self._positions = positions
		self._next_partition = 0
		self._closed = False

	def _take(self) -> Optional[BrokerMessage]:
		lanes = self.broker._topic_log(self.topic)
		for step in range(len(lanes)):
			partition = (self._next_partition + step) % len(lanes)
			position = self._positions[partition]
			if position < len(lanes[partition]):
				self._positions[partition] = position + 1
				self._next_partition = (partition + 1) % len(lanes)
				return lanes[partition][position]
		return None

	def poll(self, timeout: float = 1.0) -> Optional[BrokerMessage]:
		deadline = time.monotonic() + max(0.0, timeout)
		with self.broker._cond:
			while not self._closed:
				message = self._take()
				if message is not None:
					return message
				remaining = deadline - time.monotonic()
				if remaining <= 0:
					return None
				self.broker._cond.wait(remaining)
		return None

	def commit(self, message: BrokerMessage) -> None:
		self.broker._commit(self.group_id, message)

	def close(self) -> None:
		self._closed = True
