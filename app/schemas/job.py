import enum
import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.core.exceptions import MalformedMessageError


REPLAY_COUNT_HEADER = "dw-replay-count"


def read_replay_count(headers: Dict[str, bytes]) -> int:
	raw = headers.get(REPLAY_COUNT_HEADER)
	try:
		return max(0, int(raw)) if raw else 0
	except ValueError:
		return 0


class JobType(str, enum.Enum):
	FEED_INGESTION = "FEED_INGESTION"


class Job(BaseModel):
	"""
	Broker envelope for one unit of outbox work.

	Wire form is ``{"outboxId": ..., "jobType": ..., "payload": ...}``; the
	payload stays an opaque string so the bytes published are the bytes stored.
	``replay_count`` is transport metadata read from the ``dw-replay-count``
	header; it is never part of the envelope.
	"""
	model_config = ConfigDict(populate_by_name=True, frozen=True)

	outbox_id: Optional[str] = Field(default=None, alias="outboxId")
	job_type: str = Field(alias="jobType", min_length=1)
	payload: Optional[str] = None
	replay_count: int = Field(default=0, exclude=True)

	@field_validator("payload", mode="before")
	@classmethod
	def _payload_as_text(cls, value: Any) -> Optional[str]:
		if value is None or isinstance(value, str):
			return value
		return json.dumps(value, ensure_ascii=False)

	@classmethod
	def from_outbox(cls, entry) -> "Job":
		return cls(outbox_id=str(entry.id), job_type=entry.job_type, payload=entry.payload)

	@classmethod
	def from_message(cls, value: Optional[bytes], replay_count: int = 0) -> "Job":
		if not value:
			raise MalformedMessageError("Empty message body")
		try:
			job = cls.model_validate_json(value)
		except ValidationError as e:
			raise MalformedMessageError(f"Invalid job envelope: {e.errors(include_url=False)}") from e
		return job.model_copy(update={"replay_count": replay_count}) if replay_count else job

	def to_message(self) -> bytes:
		return self.model_dump_json(by_alias=True).encode("utf-8")
