"""
Unit tests for credential and permission validation.
"""

import asyncio

import pytest

from ai_usage_sync.auth.credentials import AuthMode
from ai_usage_sync.auth.validator import DELETE_REMEDIATION, WRITE_REMEDIATION, CredentialValidator
from ai_usage_sync.core.errors import AuthError, PermissionDeniedError, SyncTimeoutError
from ai_usage_sync.storage.table_store import UpsertMode

from conftest import fixed_clock


def make_validator(provider, store, timeout=5.0):
    return CredentialValidator(provider, store, dataset_id="team-alpha", machine_id="machine-1", timeout=timeout, clock=fixed_clock)


class TestProbe:
    """Test the canary write and delete round trip."""

    async def test_probe_round_trip(self, provider, store):
        validator = make_validator(provider, store)

        credential = await validator.probe(AuthMode.ENTRA_ID)

        assert credential is provider.credential
        entities, mode = store.upsert_calls[0]
        assert mode is UpsertMode.REPLACE
        assert entities[0]["PartitionKey"] == "ds:team-alpha|d:rbac-probe"
        assert entities[0]["RowKey"].startswith("probe:")
        assert "machine-1" not in entities[0]["RowKey"]
        assert store.delete_calls == [(entities[0]["PartitionKey"], entities[0]["RowKey"])]
        assert store.entities == {}

    async def test_missing_credential(self, failing_provider, store):
        validator = make_validator(failing_provider, store)
        with pytest.raises(AuthError):
            await validator.probe(AuthMode.ENTRA_ID)
        assert store.upsert_calls == []

    async def test_missing_write_role(self, provider, store):
        store.deny_writes = True
        validator = make_validator(provider, store)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await validator.probe(AuthMode.SHARED_KEY)

        assert exc_info.value.role == "write"
        assert exc_info.value.remediation == WRITE_REMEDIATION
        assert store.delete_calls == []

    async def test_missing_delete_role(self, provider, store):
        store.deny_deletes = True
        validator = make_validator(provider, store)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await validator.probe(AuthMode.ENTRA_ID)

        assert exc_info.value.role == "delete"
        assert exc_info.value.remediation == DELETE_REMEDIATION

    async def test_probe_timeout(self, provider, store):
        store.upsert_gate = asyncio.Event()
        validator = make_validator(provider, store, timeout=0.05)

        with pytest.raises(SyncTimeoutError, match="write"):
            await validator.probe(AuthMode.ENTRA_ID)

    def test_probe_keys_stable(self, provider, store):
        validator = make_validator(provider, store)
        assert validator.probe_keys() == make_validator(provider, store).probe_keys()


class TestEnsureTable:
    """Test table creation through the validator."""

    async def test_ensure_table(self, provider, store):
        validator = make_validator(provider, store)
        assert await validator.ensure_table() is True
        assert await validator.ensure_table() is False

    async def test_check_creates_then_probes(self, provider, store):
        validator = make_validator(provider, store)
        await validator.check(AuthMode.ENTRA_ID, create_table=True)
        assert store.created is True
        assert len(store.upsert_calls) == 1
