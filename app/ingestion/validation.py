import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import ValidationError

from app.ingestion.parsers import ParsedRecord
from app.ingestion.registry import FeedStrategy
from app.schemas.feed import FeedRecord

logger = logging.getLogger(__name__)

MISSING_FIELD = "MISSING_FIELD"
INVALID_VALUE = "INVALID_VALUE"
DUPLICATE_KEY = "DUPLICATE_KEY"


@dataclass(frozen=True)
class ValidRecord:
    line_number: int
    natural_key: str
    record: FeedRecord


@dataclass(frozen=True)
class RecordError:
    line_number: int
    natural_key: Optional[str]
    error_code: str
    error_message: str
    raw_payload: str


@dataclass
class ValidationResult:
    valid_records: List[ValidRecord] = field(default_factory=list)
    errors: List[RecordError] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.valid_records) + len(self.errors)


class FeedValidator(Protocol):
    def validate(self, records: Sequence[ParsedRecord], strategy: FeedStrategy) -> ValidationResult:
        ...


def _raw(values: Dict[str, Any]) -> str:
    return json.dumps(values, ensure_ascii=False, default=str, sort_keys=True)


def _describe(exc: ValidationError) -> Tuple[str, str]:
    errors = exc.errors(include_url=False)
    code = MISSING_FIELD if any(
        e["type"] == "missing" or e.get("input", "") is None for e in errors
    ) else INVALID_VALUE
    message = "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or 'record'}: {e['msg']}" for e in errors
    )
    return code, message


class ModelFeedValidator:
    """
    Validates each row against the strategy's record model.

    Rows are independent: a bad row becomes a RecordError and the rest carry on.
    The second and later rows repeating a natural key are rejected as
    DUPLICATE_KEY so one batch never upserts the same key twice.
    """

    def validate(self, records: Sequence[ParsedRecord], strategy: FeedStrategy) -> ValidationResult:
        result = ValidationResult()
        seen: Dict[str, int] = {}

        for parsed in records:
            try:
                record = strategy.record_model.model_validate(parsed.values)
            except ValidationError as e:
                code, message = _describe(e)
                result.errors.append(RecordError(
                    line_number=parsed.line_number,
                    natural_key=strategy.raw_key(parsed.values),
                    error_code=code,
                    error_message=message,
                    raw_payload=_raw(parsed.values),
                ))
                continue

            key = strategy.natural_key(record)
            if key in seen:
                result.errors.append(RecordError(
                    line_number=parsed.line_number,
                    natural_key=key,
                    error_code=DUPLICATE_KEY,
                    error_message=f"Key {key} already appears on line {seen[key]}",
                    raw_payload=_raw(parsed.values),
                ))
                continue
            seen[key] = parsed.line_number
            result.valid_records.append(ValidRecord(parsed.line_number, key, record))

        if result.errors:
            logger.info(
                f"{strategy.feed_type.value}: {len(result.valid_records)} valid, "
                f"{len(result.errors)} rejected"
            )
        return result
