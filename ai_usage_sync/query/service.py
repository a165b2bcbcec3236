"""
Aggregate queries over stored daily rollups.

A query scans one partition per day in the requested range, pushes equality
filters to the store and re-applies them locally, then sums tokens and
interactions overall and per requested dimensions. Results are cached for
30 seconds; any backend change clears the cache. Callers always receive
their own copy of a result.
"""

import asyncio
import copy
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from cachetools import TTLCache

from ai_usage_sync.config.loader import SyncSettings
from ai_usage_sync.core.constants import QUERY_CACHE_MAX_ENTRIES, QUERY_CACHE_TTL_SECONDS, QUERY_TIMEOUT_SECONDS
from ai_usage_sync.core.day_keys import day_keys_inclusive
from ai_usage_sync.core.errors import SyncTimeoutError, ValidationError
from ai_usage_sync.core.rollups import utc_now
from ai_usage_sync.observability.logging import get_logger
from ai_usage_sync.storage.models import UsageAggregateRow, build_partition_key
from ai_usage_sync.storage.table_store import TableFilter, TableStore

logger = get_logger(__name__)

# Group-by dimension -> row attribute
GROUP_DIMENSIONS = {
    "day": "day",
    "model": "model",
    "workspace_id": "workspace_id",
    "machine_id": "machine_id",
    "user_id": "user_id",
}

# Concurrent partition scans per query
MAX_PARALLEL_SCANS = 8


@dataclass(frozen=True)
class QueryFilters:
    """Date range plus optional equality filters."""
    start_date: str
    end_date: str
    model: Optional[str] = None
    workspace_id: Optional[str] = None
    machine_id: Optional[str] = None
    user_id: Optional[str] = None

    def table_filter(self) -> TableFilter:
        return TableFilter.equals(
            model=self.model,
            workspaceId=self.workspace_id,
            machineId=self.machine_id,
            userId=self.user_id,
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "startDate": self.start_date,
            "endDate": self.end_date,
            "model": self.model,
            "workspaceId": self.workspace_id,
            "machineId": self.machine_id,
            "userId": self.user_id,
        }


@dataclass(frozen=True)
class GroupTotal:
    """Totals for one combination of group-by dimension values."""
    key: Tuple[str, ...]
    input_tokens: int
    output_tokens: int
    interactions: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def identifier(self) -> str:
        return "|".join(self.key)


@dataclass
class AggregateResult:
    """Totals for a query, with optional groups and the values seen."""
    start_date: str
    end_date: str
    input_tokens: int = 0
    output_tokens: int = 0
    interactions: int = 0
    row_count: int = 0
    group_by: Tuple[str, ...] = ()
    groups: List[GroupTotal] = field(default_factory=list)
    model_usage: Dict[str, Dict[str, int]] = field(default_factory=dict)
    available_models: List[str] = field(default_factory=list)
    available_workspaces: List[str] = field(default_factory=list)
    available_machines: List[str] = field(default_factory=list)
    available_users: List[str] = field(default_factory=list)
    workspace_names: Dict[str, str] = field(default_factory=dict)
    machine_names: Dict[str, str] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def aggregate_rows(
    rows: Sequence[UsageAggregateRow],
    filters: QueryFilters,
    group_by: Sequence[str] = (),
) -> AggregateResult:
    """Sum matching rows overall and per group.

    Groups are ordered by total tokens descending, then identifier ascending.
    """
    result = AggregateResult(start_date=filters.start_date, end_date=filters.end_date, group_by=tuple(group_by))
    groups: Dict[Tuple[str, ...], List[int]] = {}
    models, workspaces, machines, users = set(), set(), set(), set()

    for row in rows:
        if filters.model and row.model != filters.model:
            continue
        if filters.workspace_id and row.workspace_id != filters.workspace_id:
            continue
        if filters.machine_id and row.machine_id != filters.machine_id:
            continue
        if filters.user_id and row.user_id != filters.user_id:
            continue

        models.add(row.model)
        workspaces.add(row.workspace_id)
        machines.add(row.machine_id)
        if row.user_id:
            users.add(row.user_id)
        if row.workspace_name:
            result.workspace_names.setdefault(row.workspace_id, row.workspace_name)
        if row.machine_name:
            result.machine_names.setdefault(row.machine_id, row.machine_name)

        result.row_count += 1
        result.input_tokens += row.input_tokens
        result.output_tokens += row.output_tokens
        result.interactions += row.interactions

        usage = result.model_usage.setdefault(row.model, {"inputTokens": 0, "outputTokens": 0})
        usage["inputTokens"] += row.input_tokens
        usage["outputTokens"] += row.output_tokens

        if group_by:
            key = tuple(getattr(row, GROUP_DIMENSIONS[name]) or "" for name in group_by)
            bucket = groups.setdefault(key, [0, 0, 0])
            bucket[0] += row.input_tokens
            bucket[1] += row.output_tokens
            bucket[2] += row.interactions

    result.groups = sorted(
        (GroupTotal(key, *totals) for key, totals in groups.items()),
        key=lambda group: (-group.total_tokens, group.identifier),
    )
    result.available_models = sorted(models)
    result.available_workspaces = sorted(workspaces)
    result.available_machines = sorted(machines)
    result.available_users = sorted(users)
    return result


class QueryService:
    """Runs cached aggregate queries against one table store."""

    def __init__(
        self,
        settings: SyncSettings,
        store: TableStore,
        clock: Callable[[], datetime] = utc_now,
        ttl_seconds: float = QUERY_CACHE_TTL_SECONDS,
        timeout: float = QUERY_TIMEOUT_SECONDS,
    ):
        self.settings = settings
        self.store = store
        self.clock = clock
        self.timeout = timeout
        self._cache: TTLCache = TTLCache(
            maxsize=QUERY_CACHE_MAX_ENTRIES,
            ttl=ttl_seconds,
            timer=lambda: self.clock().timestamp(),
        )

    def invalidate(self) -> None:
        """Drop every cached result."""
        self._cache.clear()

    def reconfigure(self, settings: SyncSettings, store: Optional[TableStore] = None) -> None:
        """Point the service at new settings or a new store; always clears the cache."""
        self.settings = settings
        if store is not None:
            self.store = store
        self.invalidate()

    def cache_key(self, filters: QueryFilters, group_by: Sequence[str] = ()) -> str:
        return json.dumps(
            {
                "backend": self.settings.backend_identity(),
                "store": self.store.description,
                "filters": filters.to_dict(),
                "groupBy": list(group_by),
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    async def _scan_day(self, day: str, table_filter: TableFilter, semaphore: asyncio.Semaphore) -> List[UsageAggregateRow]:
        partition_key = build_partition_key(self.settings.dataset_id, day)
        async with semaphore:
            try:
                entities = await asyncio.wait_for(
                    self.store.query_by_partition(partition_key, table_filter),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError as exc:
                raise SyncTimeoutError(f"Query for {day} timed out after {self.timeout:.0f}s") from exc
        rows = []
        for entity in entities:
            row = UsageAggregateRow.from_entity(entity)
            if row is not None:
                rows.append(row)
        return rows

    async def _scan_days(self, days: Sequence[str], table_filter: TableFilter) -> List[List[UsageAggregateRow]]:
        """Scan day partitions concurrently; the first failure cancels the rest."""
        semaphore = asyncio.Semaphore(MAX_PARALLEL_SCANS)
        tasks = [asyncio.ensure_future(self._scan_day(day, table_filter, semaphore)) for day in days]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def query(self, filters: QueryFilters, group_by: Sequence[str] = ()) -> AggregateResult:
        """Aggregate stored rows for a date range.

        Args:
            filters: Inclusive date range and optional equality filters
            group_by: Dimensions to group by (day, model, workspace_id,
                machine_id, user_id)

        Returns:
            AggregateResult

        Raises:
            ValidationError: Bad date range, filter value or dimension
            UsageSyncError: Store failures
        """
        unknown = [name for name in group_by if name not in GROUP_DIMENSIONS]
        if unknown:
            raise ValidationError(f"group_by must be drawn from: {sorted(GROUP_DIMENSIONS)} (got {unknown})")
        days = day_keys_inclusive(filters.start_date, filters.end_date)
        table_filter = filters.table_filter()

        key = self.cache_key(filters, group_by)
        cached = self._cache.get(key)
        if cached is not None:
            return copy.deepcopy(cached)

        per_day = await self._scan_days(days, table_filter)
        rows = [row for day_rows in per_day for row in day_rows]

        result = aggregate_rows(rows, filters, group_by)
        self._cache[key] = result
        logger.debug("Query over %d days matched %d rows", len(days), result.row_count)
        return copy.deepcopy(result)
