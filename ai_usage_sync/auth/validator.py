"""
Credential and permission validation.

Before a sync cycle writes anything, the validator resolves the credential
and round-trips a canary entity so missing write or delete roles surface as
a clear diagnostic instead of a failed upload.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from ai_usage_sync.core.constants import PROBE_DAY_KEY, PROBE_TIMEOUT_SECONDS
from ai_usage_sync.core.errors import PermissionDeniedError, SyncTimeoutError
from ai_usage_sync.core.sharing import hash_machine_id
from ai_usage_sync.observability.logging import get_logger
from ai_usage_sync.storage.models import build_partition_key, sanitize_table_key
from ai_usage_sync.storage.table_store import TableStore, UpsertMode

from .credentials import AuthMode, Credential, CredentialProvider

logger = get_logger(__name__)

T = TypeVar("T")

WRITE_REMEDIATION = (
    "Assign 'Storage Table Data Contributor' on the storage account or table "
    "to the identity used for sync."
)
DELETE_REMEDIATION = (
    "The identity can write but not delete entities. 'Storage Table Data Contributor' "
    "includes delete; a custom role must grant the delete data action."
)


class CredentialValidator:
    """Probes credentials and data-plane permissions for one dataset."""

    def __init__(
        self,
        provider: CredentialProvider,
        store: TableStore,
        dataset_id: str,
        machine_id: str,
        timeout: float = PROBE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.provider = provider
        self.store = store
        self.dataset_id = dataset_id
        self.machine_id = machine_id
        self.timeout = timeout
        self.clock = clock

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise SyncTimeoutError(f"Credential probe timed out during {operation} after {self.timeout:.0f}s") from exc

    def probe_keys(self):
        """Partition and row key of the canary entity for this machine."""
        partition_key = build_partition_key(self.dataset_id, PROBE_DAY_KEY)
        row_key = sanitize_table_key(f"probe:{hash_machine_id(self.dataset_id, self.machine_id)}")
        return partition_key, row_key

    async def probe(self, auth_mode: AuthMode) -> Credential:
        """Resolve the credential and verify write and delete permissions.

        Args:
            auth_mode: Auth mode to validate

        Returns:
            The resolved credential

        Raises:
            AuthError: Credential missing or rejected
            PermissionDeniedError: Role "write" or "delete" missing
            NetworkError: Store unreachable or timed out
        """
        credential = await self._bounded("credential lookup", self.provider.get_credential(auth_mode))

        partition_key, row_key = self.probe_keys()
        canary = {
            "PartitionKey": partition_key,
            "RowKey": row_key,
            "type": "rbacProbe",
            "updatedAt": self.clock().isoformat(),
        }

        try:
            await self._bounded("write", self.store.upsert([canary], UpsertMode.REPLACE))
        except PermissionDeniedError as exc:
            raise PermissionDeniedError("write", exc.message, WRITE_REMEDIATION) from exc

        try:
            await self._bounded("delete", self.store.delete_entity(partition_key, row_key))
        except PermissionDeniedError as exc:
            raise PermissionDeniedError("delete", exc.message, DELETE_REMEDIATION) from exc

        logger.info("Credential probe passed for auth mode %s", auth_mode.value)
        return credential

    async def ensure_table(self) -> bool:
        """Create the table if it is missing; returns True when it was created."""
        created = await self._bounded("table creation", self.store.create_table())
        if created:
            logger.info("Created table store table")
        return created

    async def check(self, auth_mode: AuthMode, create_table: bool = False) -> Credential:
        """Optionally ensure the table exists, then probe."""
        if create_table:
            await self.ensure_table()
        return await self.probe(auth_mode)
