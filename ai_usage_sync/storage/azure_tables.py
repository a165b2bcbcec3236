"""
Azure Table service client.

Wraps ``azure.data.tables.aio.TableClient``: per-partition transactions for
upserts, filtered entity queries and point deletes. SDK failures are mapped
onto the package error taxonomy.
"""

from typing import Any, List, Mapping, Optional, Sequence, Union

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceRequestTimeoutError,
    ServiceResponseError,
    ServiceResponseTimeoutError,
)
from azure.data.tables import EdmType, EntityProperty, TransactionOperation, UpdateMode
from azure.data.tables.aio import TableClient

from ai_usage_sync.auth.credentials import AuthMode, Credential, CredentialProvider
from ai_usage_sync.core.constants import DEFAULT_TABLE_NAME, MAX_BATCH_SIZE, QUERY_TIMEOUT_SECONDS
from ai_usage_sync.core.errors import (
    AuthError,
    NetworkError,
    PermissionDeniedError,
    StoreError,
    SyncTimeoutError,
    UsageSyncError,
    ValidationError,
)
from ai_usage_sync.core.redaction import sanitize_diagnostic
from ai_usage_sync.observability.logging import get_logger

from .models import UsageAggregateRow
from .table_store import (
    Entity,
    TableFilter,
    TableStore,
    UpsertMode,
    as_entity,
    combine_filters,
    group_by_partition,
)

logger = get_logger(__name__)

ROLE_REMEDIATION = (
    "Assign the 'Storage Table Data Contributor' role on the storage account "
    "(or table) to the signed-in identity."
)

_INT32_MAX = 2 ** 31 - 1

_UPDATE_MODES = {
    UpsertMode.MERGE: UpdateMode.MERGE,
    UpsertMode.REPLACE: UpdateMode.REPLACE,
}


def status_error(
    status_code: int,
    detail: str,
    role: str,
    secrets: Sequence[str] = (),
) -> Optional[UsageSyncError]:
    """Error for an HTTP status, or None for success statuses.

    Args:
        status_code: Response status
        detail: Error detail from the response body
        role: Data-plane role the request needed (read, write or delete)
        secrets: Values to redact from the message
    """
    if status_code < 400:
        return None
    text = sanitize_diagnostic(detail.strip(), secrets)
    if status_code == 401:
        return AuthError(
            f"Table service rejected the credential (HTTP 401). {text}".strip(),
            "Sign in again or store a valid shared key.",
        )
    if status_code == 403:
        return PermissionDeniedError(
            role,
            f"Missing {role} permission on the table (HTTP 403). {text}".strip(),
            ROLE_REMEDIATION,
        )
    return StoreError(f"Table service returned HTTP {status_code}. {text}".strip(), status_code=status_code)


def raise_for_status(status_code: int, detail: str, role: str, secrets: Sequence[str] = ()) -> None:
    """Raise the mapped error for a failing HTTP status."""
    error = status_error(status_code, detail, role, secrets)
    if error is not None:
        raise error


def _error_detail(error: AzureError) -> str:
    lines = (error.message or "").strip().splitlines()
    first = lines[0] if lines else ""
    code = getattr(error, "error_code", None)
    if code and str(code) not in first:
        return f"{code}: {first}" if first else str(code)
    return first


def translate_error(error: AzureError, role: str, secrets: Sequence[str] = ()) -> UsageSyncError:
    """Map an Azure SDK exception onto the error taxonomy."""
    if isinstance(error, (ServiceRequestTimeoutError, ServiceResponseTimeoutError)):
        return SyncTimeoutError("Table service request timed out.")
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return NetworkError(sanitize_diagnostic(
            f"Could not reach the table service: {type(error).__name__}: {error.message}", secrets,
        ))
    status_code = getattr(error, "status_code", None)
    if status_code:
        mapped = status_error(status_code, _error_detail(error), role, secrets)
        if mapped is not None:
            return mapped
    if isinstance(error, ClientAuthenticationError):
        return AuthError(
            sanitize_diagnostic(f"Could not authorize the table request. {_error_detail(error)}".strip(), secrets),
            "Sign in again or store a valid shared key.",
        )
    return StoreError(sanitize_diagnostic(f"Table service request failed: {_error_detail(error)}", secrets))


def _to_sdk_entity(entity: Entity) -> Entity:
    converted = {}
    for key, value in entity.items():
        if isinstance(value, int) and not isinstance(value, bool) and value > _INT32_MAX:
            value = EntityProperty(value, EdmType.INT64)
        converted[key] = value
    return converted


def _from_sdk_entity(entity: Mapping[str, Any]) -> Entity:
    return {
        key: value.value if isinstance(value, EntityProperty) else value
        for key, value in entity.items()
    }


class AzureTableStore(TableStore):
    """Table store backed by an Azure Storage account."""

    def __init__(
        self,
        account_name: str,
        credential_provider: CredentialProvider,
        auth_mode: AuthMode = AuthMode.ENTRA_ID,
        table_name: str = DEFAULT_TABLE_NAME,
        endpoint: Optional[str] = None,
        table_client: Optional[TableClient] = None,
        timeout: float = QUERY_TIMEOUT_SECONDS,
    ):
        """Initialize the client.

        Args:
            account_name: Storage account name
            credential_provider: Resolves the credential for ``auth_mode``
            auth_mode: entraId or sharedKey
            table_name: Table holding the aggregates
            endpoint: Override for the table endpoint (emulators, tests)
            table_client: Preconfigured SDK client; built on first use when None
            timeout: Connection and read timeout in seconds
        """
        if not account_name:
            raise ValidationError("Storage account is required")
        if not table_name:
            raise ValidationError("Table name is required")
        self.account_name = account_name
        self.table_name = table_name
        self.auth_mode = auth_mode
        self.endpoint = (endpoint or f"https://{account_name}.table.core.windows.net").rstrip("/")
        self.description = f"azureTables:{account_name}/{table_name}"
        self._provider = credential_provider
        self._client = table_client
        self._owns_client = table_client is None
        self._timeout = timeout
        self._credential: Optional[Credential] = None

    @property
    def secrets(self) -> Sequence[str]:
        return tuple(self._credential.secrets) if self._credential is not None else ()

    async def _table(self) -> TableClient:
        if self._credential is None:
            self._credential = await self._provider.get_credential(self.auth_mode)
        if self._client is None:
            self._client = TableClient(
                endpoint=self.endpoint,
                table_name=self.table_name,
                credential=self._credential.table_credential(),
                connection_timeout=self._timeout,
                read_timeout=self._timeout,
            )
        return self._client

    async def create_table(self) -> bool:
        table = await self._table()
        try:
            await table.create_table()
        except ResourceExistsError:
            return False
        except AzureError as exc:
            raise translate_error(exc, "write", self.secrets) from exc
        return True

    async def upsert(
        self,
        rows: Sequence[Union[UsageAggregateRow, Mapping[str, Any]]],
        mode: UpsertMode = UpsertMode.MERGE,
    ) -> int:
        entities = [as_entity(row) for row in rows]
        if not entities:
            return 0
        table = await self._table()
        update_mode = _UPDATE_MODES[mode]
        written = 0
        for partition_key, group in group_by_partition(entities).items():
            for start in range(0, len(group), MAX_BATCH_SIZE):
                chunk = group[start:start + MAX_BATCH_SIZE]
                operations = [
                    (TransactionOperation.UPSERT, _to_sdk_entity(entity), {"mode": update_mode})
                    for entity in chunk
                ]
                try:
                    await table.submit_transaction(operations)
                except AzureError as exc:
                    raise translate_error(exc, "write", self.secrets) from exc
                written += len(chunk)
        logger.debug("Upserted %d entities into %s", written, self.table_name)
        return written

    async def query_by_partition(
        self,
        partition_prefix: str,
        table_filter: Optional[TableFilter] = None,
    ) -> List[Entity]:
        table = await self._table()
        query_filter = combine_filters(partition_prefix, table_filter)
        entities: List[Entity] = []
        try:
            if query_filter:
                pages = table.query_entities(query_filter)
            else:
                pages = table.list_entities()
            async for entity in pages:
                entities.append(_from_sdk_entity(entity))
        except ResourceNotFoundError:
            return []
        except AzureError as exc:
            raise translate_error(exc, "read", self.secrets) from exc
        return entities

    async def delete_entity(self, partition_key: str, row_key: str) -> bool:
        table = await self._table()
        try:
            await table.delete_entity(partition_key=partition_key, row_key=row_key)
        except ResourceNotFoundError:
            return False
        except AzureError as exc:
            raise translate_error(exc, "delete", self.secrets) from exc
        return True

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None
