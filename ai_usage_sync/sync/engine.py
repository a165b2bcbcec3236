"""
Sync engine.

Runs validate -> compute -> upload cycles against the table store. At most
one cycle is in flight per engine; a trigger that arrives while a cycle is
running is coalesced into a no-op. Failures never propagate to the caller:
each cycle ends in a CycleReport and the next tick recomputes from scratch.
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional

from ai_usage_sync.auth.credentials import Credential, EntraIdCredential
from ai_usage_sync.auth.validator import CredentialValidator
from ai_usage_sync.config.loader import SyncSettings
from ai_usage_sync.core.constants import (
    MAX_BATCH_SIZE,
    MAX_CONSECUTIVE_SYNC_FAILURES,
    SYNC_BASE_INTERVAL_SECONDS,
    SYNC_MAX_INTERVAL_SECONDS,
    UPLOAD_BATCH_TIMEOUT_SECONDS,
)
from ai_usage_sync.core.errors import PartialBatchError, UsageSyncError
from ai_usage_sync.core.identity import IdentityContext, IdentityKey, IdentityMode, parse_jwt_claims, resolve_identity
from ai_usage_sync.core.redaction import describe_error
from ai_usage_sync.core.rollups import CacheLookup, Clock, RollupStats, SessionParser, compute_daily_rollups, utc_now
from ai_usage_sync.core.sharing import apply_policy
from ai_usage_sync.observability.logging import get_logger
from ai_usage_sync.storage.models import UsageAggregateRow
from ai_usage_sync.storage.session_cache import stat_mtime
from ai_usage_sync.storage.table_store import TableStore, UpsertMode

logger = get_logger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    COMPUTING = "computing"
    UPLOADING = "uploading"
    FAILED = "failed"


class CycleStatus(Enum):
    """Outcome of one sync cycle."""
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    COALESCED = "coalesced"


@dataclass(frozen=True)
class SyncFailure:
    """Why a cycle stopped before or during upload."""
    kind: str
    message: str
    remediation: Optional[str] = None
    role: Optional[str] = None


@dataclass(frozen=True)
class BatchFailure:
    """One upload batch the store did not confirm."""
    partition_key: str
    row_count: int
    kind: str
    message: str


@dataclass
class CycleReport:
    """Summary of one sync cycle."""
    status: CycleStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    rows_computed: int = 0
    rows_uploaded: int = 0
    batches_total: int = 0
    batch_failures: List[BatchFailure] = field(default_factory=list)
    failure: Optional[SyncFailure] = None
    stats: Optional[RollupStats] = None
    reason: Optional[str] = None
    incomplete_days: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (CycleStatus.SUCCEEDED, CycleStatus.SKIPPED, CycleStatus.COALESCED)

    @property
    def rows_failed(self) -> int:
        return sum(failure.row_count for failure in self.batch_failures)

    def partial_error(self) -> Optional[PartialBatchError]:
        """Summary error when some batches failed."""
        if not self.batch_failures:
            return None
        return PartialBatchError(self.rows_uploaded, self.rows_failed)


def sync_interval_seconds(lookback_days: int) -> int:
    """Scheduler interval: 5 minutes per started week of lookback, at most an hour."""
    weeks = max(1, math.ceil(lookback_days / 7))
    return min(SYNC_BASE_INTERVAL_SECONDS * weeks, SYNC_MAX_INTERVAL_SECONDS)


def build_batches(rows: Iterable[UsageAggregateRow], max_size: int = MAX_BATCH_SIZE) -> List[List[UsageAggregateRow]]:
    """Group rows by partition and chunk each group to at most ``max_size``."""
    groups = {}
    for row in rows:
        groups.setdefault(row.partition_key, []).append(row)
    batches = []
    for partition_key in sorted(groups):
        group = groups[partition_key]
        for start in range(0, len(group), max_size):
            batches.append(group[start:start + max_size])
    return batches


class SyncEngine:
    """Owns the in-flight guard, the scheduler task and the failure counter."""

    def __init__(
        self,
        settings: SyncSettings,
        store: TableStore,
        validator: CredentialValidator,
        session_files: Callable[[], Iterable[str]],
        cache_lookup: CacheLookup,
        clock: Clock = utc_now,
        stat: Callable[[str], float] = stat_mtime,
        batch_timeout: float = UPLOAD_BATCH_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        session_parser: Optional[SessionParser] = None,
    ):
        """Initialize the engine.

        Args:
            settings: Current sync settings
            store: Table store rows are uploaded to
            validator: Probes credentials before each cycle
            session_files: Returns the session files to aggregate
            cache_lookup: Read-only session statistics cache
            clock: Source of "now"
            stat: Returns a file's modification time in seconds
            batch_timeout: Per-batch upload timeout in seconds
            sleep: Awaitable delay used by the scheduler
            session_parser: Reads a session file directly on a cache miss
        """
        self.settings = settings
        self.store = store
        self.validator = validator
        self.session_files = session_files
        self.cache_lookup = cache_lookup
        self.session_parser = session_parser
        self.clock = clock
        self.stat = stat
        self.batch_timeout = batch_timeout
        self._sleep = sleep

        self.state = SyncState.IDLE
        self.consecutive_failures = 0
        self.last_report: Optional[CycleReport] = None
        self._in_flight = False
        self._scheduler: Optional[asyncio.Task] = None
        self._current_cycle: Optional[asyncio.Future] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and not self._scheduler.done()

    def reconfigure(
        self,
        settings: SyncSettings,
        store: Optional[TableStore] = None,
        validator: Optional[CredentialValidator] = None,
    ) -> None:
        """Swap settings and backend; a cycle already in flight keeps its own."""
        self.settings = settings
        if store is not None:
            self.store = store
        if validator is not None:
            self.validator = validator

    def interval_seconds(self) -> int:
        return sync_interval_seconds(self.settings.lookback_days)

    async def trigger(self) -> CycleReport:
        """Run one cycle now, or coalesce if one is already running."""
        return await self.run_cycle()

    async def run_cycle(self) -> CycleReport:
        if self._in_flight:
            logger.info("Sync already in progress; coalescing trigger")
            return CycleReport(status=CycleStatus.COALESCED, started_at=self.clock(), finished_at=self.clock())

        self._in_flight = True
        try:
            report = await self._run_cycle()
        finally:
            self._in_flight = False

        report.finished_at = self.clock()
        if report.status is CycleStatus.FAILED or report.batch_failures:
            self.consecutive_failures += 1
        elif report.status in (CycleStatus.SUCCEEDED, CycleStatus.PARTIAL):
            self.consecutive_failures = 0
        self.state = SyncState.FAILED if report.status is CycleStatus.FAILED else SyncState.IDLE
        self.last_report = report
        return report

    def _fail(self, report: CycleReport, error: UsageSyncError, secrets) -> CycleReport:
        report.status = CycleStatus.FAILED
        report.failure = SyncFailure(
            kind=error.kind,
            message=describe_error(error, secrets),
            remediation=error.remediation,
            role=getattr(error, "role", None),
        )
        logger.warning("Sync cycle failed (%s): %s", error.kind, report.failure.message)
        return report

    async def _resolve_identity(self, settings: SyncSettings, credential: Credential) -> Optional[IdentityKey]:
        if not apply_policy(settings.sharing_profile).include_user_id:
            return None
        context = IdentityContext(
            dataset_id=settings.dataset_id,
            alias=settings.user_alias,
            entra_object_id=settings.entra_object_id,
        )
        if settings.user_identity_mode is IdentityMode.PSEUDONYMOUS and isinstance(credential, EntraIdCredential):
            token = await credential.get_token()
            claims = parse_jwt_claims(token.token)
            context = IdentityContext(
                dataset_id=settings.dataset_id,
                tenant_id=claims.tenant_id,
                object_id=claims.object_id,
            )
        return resolve_identity(settings.user_identity_mode, context)

    async def _run_cycle(self) -> CycleReport:
        settings = self.settings
        store = self.store
        validator = self.validator
        report = CycleReport(status=CycleStatus.SUCCEEDED, started_at=self.clock())

        if not settings.enabled:
            report.status, report.reason = CycleStatus.SKIPPED, "sync is disabled"
            return report
        if not apply_policy(settings.sharing_profile).allow_cloud_sync:
            report.status, report.reason = CycleStatus.SKIPPED, "sharing profile is off"
            return report
        if not settings.is_configured:
            report.status, report.reason = CycleStatus.SKIPPED, "backend is not configured"
            return report

        self.state = SyncState.VALIDATING
        try:
            credential = await validator.probe(settings.auth_mode)
        except UsageSyncError as exc:
            return self._fail(report, exc, store.secrets)

        self.state = SyncState.COMPUTING
        try:
            identity = await self._resolve_identity(settings, credential)
            result = await asyncio.to_thread(
                lambda: compute_daily_rollups(
                    list(self.session_files()),
                    settings.sharing_profile,
                    settings.lookback_days,
                    self.cache_lookup,
                    dataset_id=settings.dataset_id,
                    machine_id=validator.machine_id,
                    identity=identity,
                    clock=self.clock,
                    stat=self.stat,
                    workspace_names=settings.workspace_names,
                    machine_name=settings.machine_name,
                    consent_at=settings.share_consent_at,
                    share_names=settings.share_names,
                    session_parser=self.session_parser,
                )
            )
        except UsageSyncError as exc:
            return self._fail(report, exc, tuple(store.secrets) + tuple(credential.secrets))

        report.stats = result.stats
        report.rows_computed = len(result.rows)
        report.incomplete_days = list(result.incomplete_days)

        self.state = SyncState.UPLOADING
        batches = build_batches(result.rows)
        report.batches_total = len(batches)
        for batch in batches:
            partition_key = batch[0].partition_key
            try:
                await asyncio.wait_for(store.upsert(batch, UpsertMode.REPLACE), timeout=self.batch_timeout)
            except asyncio.TimeoutError:
                report.batch_failures.append(BatchFailure(
                    partition_key, len(batch), "timeout",
                    f"Batch upload timed out after {self.batch_timeout:.0f}s",
                ))
                continue
            except UsageSyncError as exc:
                report.batch_failures.append(BatchFailure(
                    partition_key, len(batch), exc.kind, describe_error(exc, store.secrets),
                ))
                continue
            report.rows_uploaded += len(batch)

        if report.batch_failures:
            summary = report.partial_error()
            if report.rows_uploaded:
                report.status = CycleStatus.PARTIAL
            else:
                report.status = CycleStatus.FAILED
            first = report.batch_failures[0]
            report.failure = SyncFailure(kind=summary.kind if report.rows_uploaded else first.kind, message=str(summary))
            logger.warning(
                "Sync cycle uploaded %d rows, %d rows in %d batches failed",
                report.rows_uploaded, report.rows_failed, len(report.batch_failures),
            )
        elif report.incomplete_days:
            report.status = CycleStatus.PARTIAL
            report.failure = SyncFailure(
                kind="incomplete",
                message=(
                    f"Withheld {len(report.incomplete_days)} days with unreadable session files: "
                    f"{', '.join(report.incomplete_days)}"
                ),
                remediation="Those days are uploaded once their session files can be read.",
            )
            logger.warning("Sync cycle uploaded %d rows; %s", report.rows_uploaded, report.failure.message)
        else:
            logger.info(
                "Sync cycle uploaded %d rows in %d batches (cache hits %d, misses %d)",
                report.rows_uploaded, report.batches_total, result.stats.cache_hits, result.stats.cache_misses,
            )
        return report

    async def _scheduler_loop(self, run_immediately: bool) -> None:
        if not run_immediately:
            await self._sleep(self.interval_seconds())
        while True:
            self._current_cycle = asyncio.ensure_future(self.run_cycle())
            try:
                await asyncio.shield(self._current_cycle)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error in scheduled sync cycle")
                self.consecutive_failures += 1
                self.state = SyncState.FAILED
            if self.consecutive_failures >= MAX_CONSECUTIVE_SYNC_FAILURES:
                logger.error(
                    "Stopping scheduled sync after %d consecutive failures; trigger a manual sync after fixing the cause",
                    self.consecutive_failures,
                )
                return
            await self._sleep(self.interval_seconds())

    def start(self, run_immediately: bool = True) -> bool:
        """Launch the background scheduler; returns False if it is already running."""
        if self.is_running:
            return False
        self.consecutive_failures = 0
        self._scheduler = asyncio.get_running_loop().create_task(self._scheduler_loop(run_immediately))
        logger.info("Scheduled sync every %d seconds", self.interval_seconds())
        return True

    async def stop(self) -> None:
        """Cancel the scheduler timer; an in-flight cycle runs to completion."""
        task, self._scheduler = self._scheduler, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
