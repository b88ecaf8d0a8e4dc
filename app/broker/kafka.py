import logging
from typing import Any, Dict, Optional

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer

from app.broker.base import BrokerBridge, BrokerMessage, Headers, MessageSource
from app.core.exceptions import PublishRejectedError, PublishTimeoutError

logger = logging.getLogger(__name__)


class KafkaBrokerBridge(BrokerBridge):
	"""Kafka transport. Publishing waits for the delivery report of each message."""

	def __init__(
			self,
			bootstrap_servers: str,
			client_id: str = "dw-ingestion",
			publish_timeout: float = 10.0,
			producer: Optional[Producer] = None,
	):
		self.bootstrap_servers = bootstrap_servers
		self.client_id = client_id
		self.publish_timeout = publish_timeout
		self._producer = producer

	def _get_producer(self) -> Producer:
		"""Lazy-load Kafka producer."""
		if self._producer is None:
			self._producer = Producer({
				"bootstrap.servers": self.bootstrap_servers,
				"client.id": self.client_id,
				"acks": "all",
				"enable.idempotence": True,
				"message.timeout.ms": int(self.publish_timeout * 1000),
			})
			logger.info(f"Kafka producer connected to {self.bootstrap_servers}")
		return self._producer

	def publish(self, topic: str, key: str, value: bytes, headers: Optional[Headers] = None) -> None:
		producer = self._get_producer()
		report: Dict[str, Any] = {}

		def on_delivery(err, msg):
			report["error"] = err
			if err is None:
				logger.debug(f"Message {key} delivered to {msg.topic()} [{msg.partition()}]")

		try:
			producer.produce(
				topic=topic,
				key=key.encode("utf-8"),
				value=value,
				headers=list((headers or {}).items()),
				on_delivery=on_delivery,
			)
		except BufferError as e:
			raise PublishTimeoutError(f"Producer queue full: {e}") from e
		except KafkaException as e:
			self._raise_for(e.args[0] if e.args else None, str(e))

		producer.flush(self.publish_timeout)
		if "error" not in report:
			raise PublishTimeoutError(f"No delivery report for {key} within {self.publish_timeout}s")
		if report["error"] is not None:
			self._raise_for(report["error"], str(report["error"]))

	@staticmethod
	def _raise_for(error: Optional[KafkaError], message: str):
		if error is None or error.retriable() or error.code() in (KafkaError._MSG_TIMED_OUT, KafkaError._TRANSPORT):
			raise PublishTimeoutError(message)
		raise PublishRejectedError(message)

	def subscribe(self, topic: str, group_id: str) -> MessageSource:
		consumer = Consumer({
			"bootstrap.servers": self.bootstrap_servers,
			"client.id": self.client_id,
			"group.id": group_id,
			"enable.auto.commit": False,
			"auto.offset.reset": "earliest",
		})
		consumer.subscribe([topic])
		logger.info(f"Kafka consumer {group_id} subscribed to {topic}")
		return KafkaMessageSource(consumer)

	def check_connection(self) -> bool:
		try:
			self._get_producer().list_topics(timeout=5)
			return True
		except KafkaException as e:
			logger.error(f"Kafka health check failed: {e}")
			return False

	def close(self) -> None:
		if self._producer is not None:
			self._producer.flush(self.publish_timeout)
			self._producer = None


class KafkaMessageSource(MessageSource):

	def __init__(self, consumer: Consumer):
		self._consumer = consumer

	def poll(self, timeout: float = 1.0) -> Optional[BrokerMessage]:
		msg = self._consumer.poll(timeout)
		if msg is None:
			return None
		if msg.error():
			if msg.error().code() != KafkaError._PARTITION_EOF:
				logger.error(f"Kafka consumer error: {msg.error()}")
			return None
		key = msg.key()
		headers = {name: value for name, value in (msg.headers() or []) if value is not None}
		return BrokerMessage(
			topic=msg.topic(),
			key=key.decode("utf-8", errors="replace") if key else None,
			value=msg.value(),
			partition=msg.partition(),
			offset=msg.offset(),
			headers=headers,
			raw=msg,
		)

	def commit(self, message: BrokerMessage) -> None:
		self._consumer.commit(message=message.raw, asynchronous=False)

	def close(self) -> None:
		self._consumer.close()
