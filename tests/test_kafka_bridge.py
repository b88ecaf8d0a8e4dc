import pytest
from confluent_kafka import KafkaError

from app.broker.kafka import KafkaBrokerBridge
from app.core.exceptions import PublishRejectedError, PublishTimeoutError


class StubProducer:
	"""Calls the delivery callback on flush, like librdkafka does."""

	def __init__(self, error=None, deliver=True, buffer_full=False):
		self.error = error
		self.deliver = deliver
		self.buffer_full = buffer_full
		self.produced = []
		self.headers = []
		self._pending = []

	def produce(self, topic, key=None, value=None, headers=None, on_delivery=None):
		if self.buffer_full:
			raise BufferError("Local: Queue full")
		self.produced.append((topic, key, value))
		self.headers.append(headers)
		self._pending.append(on_delivery)

	def flush(self, timeout=None):
		if self.deliver:
			for callback in self._pending:
				callback(self.error, StubMessage())
		self._pending = []
		return 0


class StubMessage:
	def topic(self):
		return "dw.ingestion.jobs"

	def partition(self):
		return 0


def bridge(producer):
	return KafkaBrokerBridge("localhost:9092", publish_timeout=0.1, producer=producer)


def test_acknowledged_publish():
	producer = StubProducer()

	bridge(producer).publish("dw.ingestion.jobs", "abc", b"{}")

	assert producer.produced == [("dw.ingestion.jobs", b"abc", b"{}")]


def test_missing_delivery_report_is_a_timeout():
	with pytest.raises(PublishTimeoutError):
		bridge(StubProducer(deliver=False)).publish("t", "k", b"v")


def test_full_local_queue_is_a_timeout():
	with pytest.raises(PublishTimeoutError):
		bridge(StubProducer(buffer_full=True)).publish("t", "k", b"v")


@pytest.mark.parametrize("error", [
	KafkaError(KafkaError._MSG_TIMED_OUT),
	KafkaError(KafkaError._TRANSPORT),
	KafkaError(KafkaError.NOT_ENOUGH_REPLICAS, retriable=True),
])
def test_transient_delivery_errors_are_timeouts(error):
	with pytest.raises(PublishTimeoutError):
		bridge(StubProducer(error=error)).publish("t", "k", b"v")


def test_definitive_delivery_error_is_a_rejection():
	error = KafkaError(KafkaError.MSG_SIZE_TOO_LARGE)

	with pytest.raises(PublishRejectedError):
		bridge(StubProducer(error=error)).publish("t", "k", b"v")


def test_headers_are_passed_to_the_producer():
	producer = StubProducer()

	bridge(producer).publish("t", "k", b"v", headers={"dw-replay-count": b"2"})

	assert producer.headers == [[("dw-replay-count", b"2")]]
