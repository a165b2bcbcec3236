"""
Partitioned table store abstraction.

Backends implement a small capability set (upsert, partition scan, delete)
over entities shaped like ``UsageAggregateRow.to_entity()``. Filters are
built from structured equality clauses and every user-controlled value is
validated before it reaches a filter string.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ai_usage_sync.core.errors import PermissionDeniedError, UsageSyncError, ValidationError

from .models import UsageAggregateRow

Entity = Dict[str, Any]

# Entity properties that may appear in an equality filter
FILTERABLE_FIELDS = frozenset({
    "PartitionKey",
    "RowKey",
    "datasetId",
    "day",
    "model",
    "workspaceId",
    "machineId",
    "userId",
    "userKeyType",
})

_RESERVED_WORD = re.compile(r"\b(and|or|not)\b", re.IGNORECASE)


class UpsertMode(Enum):
    """How an upsert treats properties missing from the new entity."""
    MERGE = "merge"
    REPLACE = "replace"


def validate_filter_value(value: Any) -> str:
    """Check a user-controlled filter value and escape it for OData.

    Raises:
        ValidationError: If the value contains a newline or the whole
            words and/or/not
    """
    if value is None:
        raise ValidationError("Filter value is required")
    text = str(value)
    if "\n" in text or "\r" in text:
        raise ValidationError("Filter value must not contain newlines")
    if _RESERVED_WORD.search(text):
        raise ValidationError("Filter value must not contain the words 'and', 'or' or 'not'")
    return text.replace("'", "''")


def partition_upper_bound(prefix: str) -> str:
    """Smallest string greater than every string starting with ``prefix``."""
    if not prefix:
        raise ValidationError("Partition prefix is required")
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


@dataclass(frozen=True)
class TableFilter:
    """Conjunction of equality clauses on allow-listed entity properties."""
    clauses: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self):
        for name, value in self.clauses:
            if name not in FILTERABLE_FIELDS:
                raise ValidationError(f"Field must be one of: {sorted(FILTERABLE_FIELDS)} (got {name!r})")
            validate_filter_value(value)

    @classmethod
    def equals(cls, **fields: Optional[str]) -> "TableFilter":
        """Build a filter from keyword clauses, ignoring None values."""
        return cls(tuple((name, str(value)) for name, value in fields.items() if value is not None))

    def and_(self, other: "TableFilter") -> "TableFilter":
        return TableFilter(self.clauses + other.clauses)

    def is_empty(self) -> bool:
        return not self.clauses

    def to_odata(self) -> str:
        return " and ".join(f"{name} eq '{validate_filter_value(value)}'" for name, value in self.clauses)

    def matches(self, entity: Mapping[str, Any]) -> bool:
        """Evaluate the filter against an entity client-side."""
        for name, value in self.clauses:
            actual = entity.get(name)
            if actual is None or str(actual) != value:
                return False
        return True


def prefix_range_filter(prefix: str) -> str:
    """OData range filter selecting every partition starting with ``prefix``."""
    lower = validate_filter_value(prefix)
    upper = validate_filter_value(partition_upper_bound(prefix))
    return f"PartitionKey ge '{lower}' and PartitionKey lt '{upper}'"


def combine_filters(prefix: Optional[str], table_filter: Optional[TableFilter]) -> Optional[str]:
    parts = []
    if prefix:
        parts.append(f"({prefix_range_filter(prefix)})")
    if table_filter is not None and not table_filter.is_empty():
        parts.append(f"({table_filter.to_odata()})")
    return " and ".join(parts) or None


@dataclass
class DeleteOutcome:
    """Result of a best-effort filtered delete."""
    matched: int = 0
    deleted: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    permission_denied: bool = False


def as_entity(row: Union[UsageAggregateRow, Mapping[str, Any]]) -> Entity:
    if isinstance(row, UsageAggregateRow):
        return row.to_entity()
    return dict(row)


def group_by_partition(entities: Iterable[Entity]) -> Dict[str, List[Entity]]:
    """Group entities by PartitionKey, preserving first-seen order."""
    groups: Dict[str, List[Entity]] = {}
    for entity in entities:
        groups.setdefault(str(entity["PartitionKey"]), []).append(entity)
    return groups


class TableStore(ABC):
    """Capability set every storage backend provides."""

    #: Identifies the backend for cache keys and diagnostics; never a secret
    description: str = ""

    #: Secret values the backend holds, for redaction
    secrets: Sequence[str] = ()

    @abstractmethod
    async def create_table(self) -> bool:
        """Create the table; returns False when it already existed."""

    @abstractmethod
    async def upsert(
        self,
        rows: Sequence[Union[UsageAggregateRow, Mapping[str, Any]]],
        mode: UpsertMode = UpsertMode.MERGE,
    ) -> int:
        """Insert or update entities.

        Entities sharing a partition are written atomically in batches.

        Returns:
            Number of entities written
        """

    @abstractmethod
    async def query_by_partition(
        self,
        partition_prefix: str,
        table_filter: Optional[TableFilter] = None,
    ) -> List[Entity]:
        """Return every entity whose PartitionKey starts with the prefix."""

    @abstractmethod
    async def delete_entity(self, partition_key: str, row_key: str) -> bool:
        """Delete one entity; returns False when it did not exist."""

    async def delete_where(self, table_filter: TableFilter, partition_prefix: str) -> DeleteOutcome:
        """Delete every entity under the prefix matching the filter.

        Best-effort: individual failures are collected, not raised.
        """
        outcome = DeleteOutcome()
        entities = await self.query_by_partition(partition_prefix, table_filter)
        for entity in entities:
            if not table_filter.matches(entity):
                continue
            outcome.matched += 1
            try:
                await self.delete_entity(str(entity["PartitionKey"]), str(entity["RowKey"]))
                outcome.deleted += 1
            except PermissionDeniedError as exc:
                outcome.failed += 1
                outcome.permission_denied = True
                outcome.errors.append(str(exc))
            except UsageSyncError as exc:
                outcome.failed += 1
                outcome.errors.append(str(exc))
        return outcome

    async def aclose(self) -> None:
        """Release backend resources."""
