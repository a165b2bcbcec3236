"""
Data models for storage layer.

Defines the daily aggregate entity and its stable keys.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from ai_usage_sync.core.constants import (
    FORBIDDEN_KEY_CHARS,
    SCHEMA_VERSION_NO_USER,
    SCHEMA_VERSION_WITH_USER,
    SCHEMA_VERSION_WITH_USER_AND_CONSENT,
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")

USER_KEY_TYPES = ("pseudonymous", "teamAlias", "entraObjectId")


def sanitize_table_key(value: str) -> str:
    """Replace characters the table service forbids in keys with '_'."""
    if not value:
        return value
    result = value
    for char in FORBIDDEN_KEY_CHARS:
        result = result.replace(char, "_")
    return _CONTROL_CHARS.sub("_", result)


def partition_prefix(dataset_id: str) -> str:
    """Prefix shared by every day-partition of a dataset."""
    return sanitize_table_key(f"ds:{dataset_id}|d:")


def build_partition_key(dataset_id: str, day: str) -> str:
    """Partition key co-locating one dataset's rows for one day."""
    return sanitize_table_key(f"ds:{dataset_id}|d:{day}")


def build_row_key(model: str, workspace_id: str, machine_id: str, user_id: Optional[str] = None) -> str:
    """Stable hash of the dimension tuple.

    Empty user ids are normalized away so that rows with and without a
    blank user id share a key.
    """
    canonical = json.dumps(
        [model, workspace_id, machine_id, (user_id or "").strip() or None],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_int(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 0
    return number if number >= 0 else 0


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class UsageAggregateRow:
    """Daily aggregate for one day x model x workspace x machine x user.

    Rows are replaced on upload, never incremented remotely: the totals
    always hold the full day's usage recomputed from local state.
    """
    partition_key: str
    row_key: str
    schema_version: int
    dataset_id: str
    day: str
    model: str
    workspace_id: str
    machine_id: str
    input_tokens: int
    output_tokens: int
    interactions: int
    updated_at: str
    workspace_name: Optional[str] = None
    machine_name: Optional[str] = None
    user_id: Optional[str] = None
    user_key_type: Optional[str] = None
    share_with_team: Optional[bool] = None
    consent_at: Optional[str] = None

    def __post_init__(self):
        """Validate counters are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")
        if self.interactions < 0:
            raise ValueError("interactions cannot be negative")
        if self.user_key_type is not None and self.user_key_type not in USER_KEY_TYPES:
            raise ValueError(f"user_key_type must be one of: {list(USER_KEY_TYPES)}")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def create(
        cls,
        dataset_id: str,
        day: str,
        model: str,
        workspace_id: str,
        machine_id: str,
        input_tokens: int,
        output_tokens: int,
        interactions: int,
        workspace_name: Optional[str] = None,
        machine_name: Optional[str] = None,
        user_id: Optional[str] = None,
        user_key_type: Optional[str] = None,
        consent_at: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> "UsageAggregateRow":
        """Build a row with its keys and schema version derived from dimensions."""
        effective_user = (user_id or "").strip() or None
        with_consent = effective_user is not None and consent_at is not None
        if with_consent:
            schema_version = SCHEMA_VERSION_WITH_USER_AND_CONSENT
        elif effective_user is not None:
            schema_version = SCHEMA_VERSION_WITH_USER
        else:
            schema_version = SCHEMA_VERSION_NO_USER

        return cls(
            partition_key=build_partition_key(dataset_id, day),
            row_key=build_row_key(model, workspace_id, machine_id, effective_user),
            schema_version=schema_version,
            dataset_id=dataset_id,
            day=day,
            model=model,
            workspace_id=workspace_id,
            machine_id=machine_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            interactions=interactions,
            updated_at=updated_at or _utc_now_iso(),
            workspace_name=workspace_name,
            machine_name=machine_name,
            user_id=effective_user,
            user_key_type=user_key_type if effective_user else None,
            share_with_team=True if with_consent else None,
            consent_at=consent_at if with_consent else None,
        )

    def to_entity(self) -> Dict[str, Any]:
        """Serialize to the wire entity (optional fields omitted when unset)."""
        entity: Dict[str, Any] = {
            "PartitionKey": self.partition_key,
            "RowKey": self.row_key,
            "schemaVersion": self.schema_version,
            "datasetId": self.dataset_id,
            "day": self.day,
            "model": self.model,
            "workspaceId": self.workspace_id,
            "machineId": self.machine_id,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "interactions": self.interactions,
            "updatedAt": self.updated_at,
        }
        optional = {
            "workspaceName": self.workspace_name,
            "machineName": self.machine_name,
            "userId": self.user_id,
            "userKeyType": self.user_key_type,
            "shareWithTeam": self.share_with_team,
            "consentAt": self.consent_at,
        }
        entity.update({k: v for k, v in optional.items() if v is not None})
        return entity

    @classmethod
    def from_entity(cls, entity: Mapping[str, Any]) -> Optional["UsageAggregateRow"]:
        """Normalize a stored entity; returns None when required dimensions are missing."""
        model = _as_text(entity.get("model"))
        workspace_id = _as_text(entity.get("workspaceId"))
        machine_id = _as_text(entity.get("machineId"))
        if not model or not workspace_id or not machine_id:
            return None

        partition_key = str(entity.get("PartitionKey") or entity.get("partitionKey") or "")
        user_key_type = _as_text(entity.get("userKeyType"))
        share = entity.get("shareWithTeam")
        schema_version = entity.get("schemaVersion")
        return cls(
            partition_key=partition_key,
            row_key=str(entity.get("RowKey") or entity.get("rowKey") or ""),
            schema_version=schema_version if isinstance(schema_version, int) else SCHEMA_VERSION_NO_USER,
            dataset_id=_as_text(entity.get("datasetId")) or "",
            day=_as_text(entity.get("day")) or partition_key.rsplit("|d:", 1)[-1],
            model=model,
            workspace_id=workspace_id,
            machine_id=machine_id,
            input_tokens=_as_int(entity.get("inputTokens")),
            output_tokens=_as_int(entity.get("outputTokens")),
            interactions=_as_int(entity.get("interactions")),
            updated_at=_as_text(entity.get("updatedAt")) or "",
            workspace_name=_as_text(entity.get("workspaceName")),
            machine_name=_as_text(entity.get("machineName")),
            user_id=_as_text(entity.get("userId")),
            user_key_type=user_key_type if user_key_type in USER_KEY_TYPES else None,
            share_with_team=share if isinstance(share, bool) else None,
            consent_at=_as_text(entity.get("consentAt")),
        )
