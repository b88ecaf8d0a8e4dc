"""Feed type -> ingestion strategy. Adding a feed type means adding an entry here."""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple, Type

from app.core.exceptions import UnsupportedFeedTypeError
from app.models.directory import CommonCode, Employee, Holiday, Organization
from app.models.feed_batch import FeedType
from app.schemas.feed import (
    CommonCodeRecord,
    EmployeeRecord,
    FeedRecord,
    HolidayRecord,
    OrganizationRecord,
)


@dataclass(frozen=True)
class FeedStrategy:
    feed_type: FeedType
    record_model: Type[FeedRecord]
    table: Type
    key_fields: Tuple[str, ...]
    caches: Sequence[Any] = field(default_factory=tuple)

    def natural_key(self, record: FeedRecord) -> str:
        return "|".join(str(getattr(record, name)) for name in self.key_fields)

    def raw_key(self, values: Dict[str, Any]) -> Optional[str]:
        """Best-effort key of a row that failed validation."""
        parts = []
        for name in self.key_fields:
            alias = self.record_model.model_fields[name].alias or name
            value = values.get(alias, values.get(name))
            if value in (None, ""):
                return None
            parts.append(str(value).strip())
        return "|".join(parts)

    def key_filter(self, record: FeedRecord) -> Dict[str, Any]:
        return {name: getattr(record, name) for name in self.key_fields}

    def to_columns(self, record: FeedRecord) -> Dict[str, Any]:
        return record.model_dump(exclude=set(self.key_fields))


FeedRegistry = Dict[FeedType, FeedStrategy]


def build_feed_registry(org_tree_cache=None, holiday_cache=None, code_group_cache=None) -> FeedRegistry:
    def present(*caches):
        return tuple(c for c in caches if c is not None)

    strategies = [
        FeedStrategy(FeedType.ORGANIZATION, OrganizationRecord, Organization, ("organization_code",),
                     present(org_tree_cache)),
        FeedStrategy(FeedType.EMPLOYEE, EmployeeRecord, Employee, ("employee_number",),
                     present(org_tree_cache)),
        FeedStrategy(FeedType.HOLIDAY, HolidayRecord, Holiday, ("holiday_date",),
                     present(holiday_cache)),
        FeedStrategy(FeedType.COMMON_CODE, CommonCodeRecord, CommonCode, ("code_group", "code"),
                     present(code_group_cache)),
    ]
    return {strategy.feed_type: strategy for strategy in strategies}


def resolve_strategy(registry: FeedRegistry, feed_type: FeedType) -> FeedStrategy:
    strategy = registry.get(feed_type)
    if strategy is None:
        raise UnsupportedFeedTypeError(f"Unsupported feed type {feed_type}")
    return strategy
