"""
Shared fixtures for usage sync tests.

Provides a fixed clock, an in-memory table store spy and helpers for
building session cache entries.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

import pytest
from azure.core.credentials import AccessToken

from ai_usage_sync.auth.credentials import AuthMode, Credential, CredentialProvider, LocalCredential
from ai_usage_sync.config.loader import BackendType, SyncSettings
from ai_usage_sync.core.errors import AuthError, PermissionDeniedError, StoreError
from ai_usage_sync.storage.table_store import Entity, TableStore, UpsertMode, as_entity

FIXED_NOW = datetime(2026, 1, 16, 18, 0, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


def timestamp_on(day: str, hour: int = 10) -> float:
    """POSIX timestamp for an hour on a UTC day."""
    return datetime.fromisoformat(f"{day}T{hour:02d}:00:00+00:00").timestamp()


def session_entry(mtime: float, usage: Dict[str, Tuple[int, int]]) -> Dict:
    """Session cache entry in the camelCase shape the scanner writes."""
    return {
        "tokens": sum(i + o for i, o in usage.values()),
        "interactions": len(usage),
        "modelUsage": {
            model: {"inputTokens": i, "outputTokens": o}
            for model, (i, o) in usage.items()
        },
        "mtime": mtime * 1000.0,
    }


class MutableClock:
    """Clock tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeStore(TableStore):
    """In-memory table store that records every call."""

    description = "fake:usage"

    def __init__(self):
        self.entities: Dict[Tuple[str, str], Entity] = {}
        self.upsert_calls: List[Tuple[List[Entity], UpsertMode]] = []
        self.query_calls: List[str] = []
        self.delete_calls: List[Tuple[str, str]] = []
        self.created = False
        self.fail_partitions: Set[str] = set()
        self.deny_writes = False
        self.deny_deletes = False
        self.upsert_gate: Optional[asyncio.Event] = None
        self.upsert_started: Optional[asyncio.Event] = None

    def data_upserts(self) -> List[Tuple[List[Entity], UpsertMode]]:
        """Upsert calls excluding the credential probe canary."""
        return [
            (entities, mode) for entities, mode in self.upsert_calls
            if not entities[0]["PartitionKey"].endswith("|d:rbac-probe")
        ]

    async def create_table(self) -> bool:
        created = not self.created
        self.created = True
        return created

    async def upsert(self, rows, mode=UpsertMode.MERGE) -> int:
        entities = [as_entity(row) for row in rows]
        self.upsert_calls.append((entities, mode))
        if self.deny_writes:
            raise PermissionDeniedError("write", "Missing write permission (HTTP 403).")
        if self.upsert_started is not None:
            self.upsert_started.set()
        if self.upsert_gate is not None:
            await self.upsert_gate.wait()
        for entity in entities:
            if entity["PartitionKey"] in self.fail_partitions:
                raise StoreError("Table service returned HTTP 500.", status_code=500)
        for entity in entities:
            key = (entity["PartitionKey"], entity["RowKey"])
            if mode is UpsertMode.MERGE and key in self.entities:
                merged = dict(self.entities[key])
                merged.update(entity)
                self.entities[key] = merged
            else:
                self.entities[key] = dict(entity)
        return len(entities)

    async def query_by_partition(self, partition_prefix, table_filter=None) -> List[Entity]:
        self.query_calls.append(partition_prefix)
        return [
            dict(entity)
            for (partition_key, _), entity in sorted(self.entities.items())
            if partition_key.startswith(partition_prefix)
            and (table_filter is None or table_filter.matches(entity))
        ]

    async def delete_entity(self, partition_key, row_key) -> bool:
        self.delete_calls.append((partition_key, row_key))
        if self.deny_deletes:
            raise PermissionDeniedError("delete", "Missing delete permission (HTTP 403).")
        return self.entities.pop((partition_key, row_key), None) is not None


class FakeTokenCredential:
    """Async token credential with the azure-identity ``get_token`` signature."""

    def __init__(self, token: str = "static-token", error: Optional[Exception] = None):
        self.token = token
        self.error = error
        self.scopes: List[Tuple[str, ...]] = []
        self.closed = False

    async def get_token(self, *scopes: str, **kwargs) -> AccessToken:
        self.scopes.append(scopes)
        if self.error is not None:
            raise self.error
        return AccessToken(self.token, 4102444800)

    async def close(self) -> None:
        self.closed = True


class FakeProvider(CredentialProvider):
    """Credential provider returning a fixed credential or failing."""

    def __init__(self, credential: Optional[Credential] = None, error: Optional[Exception] = None):
        self.credential = credential or LocalCredential()
        self.error = error
        self.calls: List[AuthMode] = []

    async def get_credential(self, auth_mode: AuthMode) -> Credential:
        self.calls.append(auth_mode)
        if self.error is not None:
            raise self.error
        return self.credential


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def failing_provider():
    return FakeProvider(error=AuthError("No Entra ID credential is available.", "Run 'az login'."))


@pytest.fixture
def settings(tmp_path):
    """Settings for a configured local backend sharing anonymized data."""
    from ai_usage_sync.core.sharing import SharingProfile
    return SyncSettings(
        dataset_id="team-alpha",
        lookback_days=7,
        sharing_profile=SharingProfile.TEAM_ANONYMIZED,
        backend=BackendType.SQLITE,
        sqlite_path=str(tmp_path / "usage.db"),
        machine_id="machine-1",
        session_cache_path=str(tmp_path / "session_cache.json"),
    )


@pytest.fixture
def session_files():
    """Three sessions for one workspace on 2026-01-16 plus one outside the window."""
    base = "/home/dev/.config/Code/User/workspaceStorage/ws-123/chatSessions"
    mtime = timestamp_on("2026-01-16")
    old = timestamp_on("2025-12-01")
    return {
        f"{base}/a.json": session_entry(mtime, {"gpt-4o": (100, 50)}),
        f"{base}/b.json": session_entry(mtime + 60, {"gpt-4o": (200, 75)}),
        f"{base}/c.json": session_entry(mtime + 120, {"gpt-4o": (10, 5)}),
        f"{base}/old.json": session_entry(old, {"gpt-4o": (999, 999)}),
    }


def lookup_from(entries: Dict[str, Dict]):
    """Cache lookup over in-memory entries, matching on mtime."""
    def lookup(path: str, mtime: float):
        entry = entries.get(path)
        if entry is None or abs(entry["mtime"] - mtime * 1000.0) > 1.0:
            return None
        return entry
    return lookup


def stat_from(entries: Dict[str, Dict]):
    def stat(path: str) -> float:
        if path not in entries:
            raise FileNotFoundError(path)
        return entries[path]["mtime"] / 1000.0
    return stat
