"""
Usage sync facade.

Single entry point for hosts: wires settings, credentials, the table store,
the sync engine and the query service together. Every operation returns an
OperationResult; nothing raises across this boundary.
"""

import hashlib
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Iterable, List, Optional, Sequence, TypeVar, Union

from ai_usage_sync.auth.credentials import CredentialProvider, DefaultCredentialProvider, LocalCredentialProvider
from ai_usage_sync.auth.validator import CredentialValidator
from ai_usage_sync.config.loader import BackendType, SyncSettings, export_settings, save_settings
from ai_usage_sync.core.errors import ConfigError, UsageSyncError, ValidationError
from ai_usage_sync.core.redaction import describe_error, sanitize_diagnostic
from ai_usage_sync.core.rollups import CacheLookup, Clock, SessionParser, utc_now
from ai_usage_sync.core.sharing import SharingProfile, parse_profile, requires_consent
from ai_usage_sync.observability.logging import get_logger
from ai_usage_sync.query.service import AggregateResult, QueryFilters, QueryService
from ai_usage_sync.storage.azure_tables import AzureTableStore
from ai_usage_sync.storage.models import partition_prefix
from ai_usage_sync.storage.session_cache import SessionCacheReader, stat_mtime
from ai_usage_sync.storage.sqlite_store import SqliteTableStore
from ai_usage_sync.storage.table_store import TableFilter, TableStore, validate_filter_value
from ai_usage_sync.sync.engine import CycleReport, CycleStatus, SyncEngine

logger = get_logger(__name__)

T = TypeVar("T")

# Settings whose change requires a new store and credential provider
_BACKEND_FIELDS = frozenset({
    "backend",
    "auth_mode",
    "storage_account",
    "table_name",
    "dataset_id",
    "sqlite_path",
    "machine_id",
})


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Result-or-error value returned by every facade operation."""
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    remediation: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(ok=True, value=value)


@dataclass(frozen=True)
class ProvisioningResult:
    """Resources created by an external provisioning flow."""
    subscription_id: str
    resource_group: str
    storage_account: str
    table_name: str


@dataclass
class DeletionReport:
    """Outcome of deleting one user's rows across the dataset."""
    user_id: str
    matched: int = 0
    deleted: int = 0
    failed: int = 0
    permission_denied: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed == 0


@dataclass
class Backend:
    store: TableStore
    provider: CredentialProvider


def default_machine_id() -> str:
    """Stable identifier for this host."""
    material = f"{socket.gethostname()}:{uuid.getnode()}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def create_backend(settings: SyncSettings) -> Backend:
    """Build the table store and credential provider for the configured backend."""
    if settings.backend is BackendType.SQLITE:
        return Backend(
            store=SqliteTableStore(settings.sqlite_path, settings.table_name),
            provider=LocalCredentialProvider(),
        )
    provider = DefaultCredentialProvider(settings.storage_account or "")
    if not settings.storage_account:
        # Unconfigured: the engine skips cycles and queries fail with a config error
        return Backend(store=_UnconfiguredStore(), provider=provider)
    return Backend(
        store=AzureTableStore(
            settings.storage_account,
            provider,
            auth_mode=settings.auth_mode,
            table_name=settings.table_name,
        ),
        provider=provider,
    )


class _UnconfiguredStore(TableStore):
    description = "unconfigured"

    def _raise(self):
        raise ConfigError(
            "Backend storage is not configured.",
            "Run 'ai-usage-sync init' with a storage account or choose the sqlite backend.",
        )

    async def create_table(self) -> bool:
        self._raise()

    async def upsert(self, rows, mode=None) -> int:
        self._raise()

    async def query_by_partition(self, partition_prefix, table_filter=None):
        self._raise()

    async def delete_entity(self, partition_key, row_key) -> bool:
        self._raise()


def _parse_consent(consent_at: Union[str, datetime], now: datetime) -> str:
    if isinstance(consent_at, datetime):
        moment = consent_at
    else:
        try:
            moment = datetime.fromisoformat(str(consent_at).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("Consent timestamp must be an ISO-8601 timestamp")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if moment > now:
        raise ValidationError("Consent timestamp cannot be in the future")
    return moment.astimezone(timezone.utc).isoformat()


class UsageSyncFacade:
    """Host-facing operations for usage sync."""

    def __init__(
        self,
        settings: SyncSettings,
        *,
        config_path: Optional[str] = None,
        backend_factory: Callable[[SyncSettings], Backend] = create_backend,
        session_files: Optional[Callable[[], Iterable[str]]] = None,
        cache_lookup: Optional[CacheLookup] = None,
        clock: Clock = utc_now,
        stat: Callable[[str], float] = stat_mtime,
        session_parser: Optional[SessionParser] = None,
    ):
        """Wire the sync components.

        Args:
            settings: Initial settings
            config_path: When set, settings changes are saved there
            backend_factory: Builds the store and credential provider
            session_files: Session files to aggregate (defaults to the cache's entries)
            cache_lookup: Session statistics lookup (defaults to the cache file)
            clock: Source of "now"
            stat: Returns a file's modification time in seconds
            session_parser: Reads a session file directly on a cache miss
        """
        self.settings = settings
        self.config_path = config_path
        self.clock = clock
        self._backend_factory = backend_factory

        if session_files is None or cache_lookup is None:
            reader = SessionCacheReader(settings.session_cache_path)
            session_files = session_files or reader.paths
            cache_lookup = cache_lookup or reader.lookup

        self.backend = backend_factory(settings)
        self.validator = self._build_validator(settings, self.backend)
        self.engine = SyncEngine(
            settings,
            self.backend.store,
            self.validator,
            session_files=session_files,
            cache_lookup=cache_lookup,
            clock=clock,
            stat=stat,
            session_parser=session_parser,
        )
        self.query_service = QueryService(settings, self.backend.store, clock=clock)

    def _build_validator(self, settings: SyncSettings, backend: Backend) -> CredentialValidator:
        return CredentialValidator(
            backend.provider,
            backend.store,
            dataset_id=settings.dataset_id,
            machine_id=settings.machine_id or default_machine_id(),
            clock=self.clock,
        )

    def _failure(self, error: BaseException) -> OperationResult:
        secrets = tuple(self.backend.store.secrets)
        if isinstance(error, UsageSyncError):
            return OperationResult(
                ok=False,
                error=sanitize_diagnostic(error.message, secrets),
                error_kind=error.kind,
                remediation=error.remediation,
            )
        logger.error("Unexpected %s in usage sync operation", type(error).__name__)
        return OperationResult(ok=False, error=describe_error(error, secrets), error_kind="internal")

    async def _apply_settings(self, settings: SyncSettings) -> None:
        previous = self.settings
        self.settings = settings
        backend_changed = any(
            getattr(previous, name) != getattr(settings, name) for name in _BACKEND_FIELDS
        )
        if backend_changed:
            old_backend = self.backend
            self.backend = self._backend_factory(settings)
            self.validator = self._build_validator(settings, self.backend)
            self.engine.reconfigure(settings, self.backend.store, self.validator)
            self.query_service.reconfigure(settings, self.backend.store)
            if not self.engine.in_flight:
                await old_backend.store.aclose()
                await old_backend.provider.aclose()
        else:
            self.engine.reconfigure(settings)
            self.query_service.reconfigure(settings)
        if self.config_path:
            save_settings(settings, self.config_path)

    async def update_settings(self, **changes: Any) -> OperationResult[SyncSettings]:
        """Apply settings changes; the query cache is always invalidated."""
        try:
            if {"sharing_profile", "share_consent_at", "share_names"} & set(changes):
                raise ValidationError("Use set_sharing_profile to change the sharing profile, names opt-in or consent")
            settings = self.settings.with_changes(**changes)
            await self._apply_settings(settings)
            return OperationResult.success(settings)
        except TypeError as exc:
            return OperationResult(ok=False, error=str(exc), error_kind="validation")
        except Exception as exc:
            return self._failure(exc)

    async def setup_wizard(
        self,
        provisioner: Callable[[SyncSettings], Awaitable[ProvisioningResult]],
    ) -> OperationResult[SyncSettings]:
        """Run an external provisioning flow and adopt the resources it returns."""
        try:
            provisioned = await provisioner(self.settings)
            settings = self.settings.with_changes(
                backend=BackendType.AZURE_TABLES,
                subscription_id=provisioned.subscription_id,
                resource_group=provisioned.resource_group,
                storage_account=provisioned.storage_account,
                table_name=provisioned.table_name,
            )
            await self._apply_settings(settings)
            logger.info("Backend configured from provisioning result")
            return OperationResult.success(settings)
        except Exception as exc:
            return self._failure(exc)

    async def upload_rollups(self) -> OperationResult[CycleReport]:
        """Run one sync cycle now (coalesced if one is already running)."""
        try:
            report = await self.engine.trigger()
        except Exception as exc:
            return self._failure(exc)
        if report.status in (CycleStatus.SUCCEEDED, CycleStatus.SKIPPED, CycleStatus.COALESCED):
            if report.status is CycleStatus.SUCCEEDED:
                self.query_service.invalidate()
            return OperationResult.success(report)
        if report.rows_uploaded:
            self.query_service.invalidate()
        failure = report.failure
        return OperationResult(
            ok=False,
            value=report,
            error=failure.message if failure else "Sync failed",
            error_kind=failure.kind if failure else "store",
            remediation=failure.remediation if failure else None,
        )

    async def query_aggregates(
        self,
        filters: QueryFilters,
        group_by: Sequence[str] = (),
    ) -> OperationResult[AggregateResult]:
        try:
            return OperationResult.success(await self.query_service.query(filters, group_by))
        except Exception as exc:
            return self._failure(exc)

    async def set_sharing_profile(
        self,
        profile: Union[SharingProfile, str],
        consent_at: Optional[Union[str, datetime]] = None,
        share_names: Optional[bool] = None,
    ) -> OperationResult[SyncSettings]:
        """Change the sharing profile and, optionally, the names opt-in.

        Moving to a more disclosive profile, starting to share the user id or
        turning on workspace and machine names requires ``consent_at``.
        Reducing disclosure takes effect immediately for future rows.
        """
        try:
            new_profile = profile if isinstance(profile, SharingProfile) else parse_profile(profile)
            current = self.settings.sharing_profile
            current_names = self.settings.share_names
            new_names = current_names if share_names is None else bool(share_names)
            consent = self.settings.share_consent_at
            if requires_consent(current, new_profile, current_names, new_names):
                if consent_at is None:
                    target = new_profile.value + (" with workspace and machine names" if new_names else "")
                    raise ValidationError(
                        f"Changing the sharing profile from {current.value} to {target} "
                        "discloses more data and requires explicit consent.",
                        "Pass a consent timestamp to confirm.",
                    )
                consent = _parse_consent(consent_at, self.clock())
            elif consent_at is not None:
                consent = _parse_consent(consent_at, self.clock())

            settings = self.settings.with_changes(
                sharing_profile=new_profile,
                share_names=new_names,
                share_consent_at=consent,
            )
            await self._apply_settings(settings)
            logger.info(
                "Sharing profile changed from %s to %s (names %s)",
                current.value, new_profile.value, "on" if new_names else "off",
            )
            return OperationResult.success(settings)
        except Exception as exc:
            return self._failure(exc)

    async def delete_user_data(self, user_id: str) -> OperationResult[DeletionReport]:
        """Delete every row for a user across the dataset's day partitions.

        Best-effort: rows that could not be deleted are counted in the
        report and the result is not ok.
        """
        try:
            if not user_id or not user_id.strip():
                raise ValidationError("User id is required")
            validate_filter_value(user_id)
            outcome = await self.backend.store.delete_where(
                TableFilter.equals(userId=user_id),
                partition_prefix(self.settings.dataset_id),
            )
        except Exception as exc:
            return self._failure(exc)

        self.query_service.invalidate()
        report = DeletionReport(
            user_id=user_id,
            matched=outcome.matched,
            deleted=outcome.deleted,
            failed=outcome.failed,
            permission_denied=outcome.permission_denied,
            errors=[sanitize_diagnostic(message, self.backend.store.secrets) for message in outcome.errors],
        )
        logger.info("Deleted %d of %d rows for a user", report.deleted, report.matched)
        if report.complete:
            return OperationResult.success(report)
        return OperationResult(
            ok=False,
            value=report,
            error=f"{report.failed} of {report.matched} rows could not be deleted",
            error_kind="permission" if report.permission_denied else "partial",
        )

    async def probe_credentials(self) -> OperationResult[str]:
        """Validate credentials and data-plane permissions."""
        try:
            await self.validator.probe(self.settings.auth_mode)
        except Exception as exc:
            return self._failure(exc)
        return OperationResult.success(self.settings.auth_mode.value)

    async def ensure_table(self) -> OperationResult[bool]:
        try:
            return OperationResult.success(await self.validator.ensure_table())
        except Exception as exc:
            return self._failure(exc)

    def export_settings(self) -> OperationResult[dict]:
        """Shareable copy of the settings, without secrets or identifiers."""
        return OperationResult.success(export_settings(self.settings))

    def start(self) -> bool:
        """Start scheduled sync in the running event loop."""
        return self.engine.start()

    async def stop(self) -> None:
        await self.engine.stop()

    async def aclose(self) -> None:
        await self.engine.stop()
        await self.backend.store.aclose()
        await self.backend.provider.aclose()
