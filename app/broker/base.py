from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

Headers = Dict[str, bytes]


@dataclass(frozen=True)
class BrokerMessage:
	topic: str
	key: Optional[str]
	value: Optional[bytes]
	partition: Optional[int] = None
	offset: Optional[int] = None
	headers: Headers = field(default_factory=dict, compare=False)
	raw: Any = field(default=None, compare=False, repr=False)


class MessagePublisher(ABC):

	@abstractmethod
	def publish(self, topic: str, key: str, value: bytes, headers: Optional[Headers] = None) -> None:
		"""
		Publish and wait for the broker acknowledgement.

		Raises PublishTimeoutError when no acknowledgement arrives in time (or the
		transport is unreachable) and PublishRejectedError on a definitive refusal.
		"""


class MessageSource(ABC):
	"""A subscription to one topic within a consumer group."""

	@abstractmethod
	def poll(self, timeout: float = 1.0) -> Optional[BrokerMessage]:
		...

	@abstractmethod
	def commit(self, message: BrokerMessage) -> None:
		"""Mark ``message`` and everything before it in its partition as consumed."""

	@abstractmethod
	def close(self) -> None:
		...


class BrokerBridge(MessagePublisher):

	@abstractmethod
	def subscribe(self, topic: str, group_id: str) -> MessageSource:
		...

	def check_connection(self) -> bool:
		return True

	def close(self) -> None:
		pass
