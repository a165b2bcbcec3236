"""
Configuration management and loading.

Settings live in a YAML file (``~/.ai_usage_sync/config.yaml`` by default,
overridable with AI_USAGE_SYNC_CONFIG). Keys are camelCase. Secrets are
never part of this file: the storage shared key lives in the OS keyring.
"""

import os
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_usage_sync.auth.credentials import AuthMode
from ai_usage_sync.core.constants import (
    DEFAULT_DATASET_ID,
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_TABLE_NAME,
    MAX_LOOKBACK_DAYS,
    MIN_LOOKBACK_DAYS,
)
from ai_usage_sync.core.errors import ConfigError
from ai_usage_sync.core.identity import IdentityMode
from ai_usage_sync.core.sharing import SharingProfile

CONFIG_ENV_VAR = "AI_USAGE_SYNC_CONFIG"
DEFAULT_CONFIG_PATH = "~/.ai_usage_sync/config.yaml"
DEFAULT_SQLITE_PATH = "~/.ai_usage_sync/usage.db"
DEFAULT_SESSION_CACHE_PATH = "~/.ai_usage_sync/session_cache.json"

_DATASET_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_TABLE_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9]{2,62}$")
_STORAGE_ACCOUNT = re.compile(r"^[a-z0-9]{3,24}$")

REDACTED_VALUE = "[REDACTED]"


class BackendType(Enum):
    """Where aggregates are stored."""
    AZURE_TABLES = "azureTables"
    SQLITE = "sqlite"


# YAML key -> dataclass field
_KEY_MAP = {
    "enabled": "enabled",
    "datasetId": "dataset_id",
    "lookbackDays": "lookback_days",
    "sharingProfile": "sharing_profile",
    "userIdentityMode": "user_identity_mode",
    "authMode": "auth_mode",
    "backend": "backend",
    "storageAccount": "storage_account",
    "tableName": "table_name",
    "subscriptionId": "subscription_id",
    "resourceGroup": "resource_group",
    "userAlias": "user_alias",
    "entraObjectId": "entra_object_id",
    "shareConsentAt": "share_consent_at",
    "shareWorkspaceMachineNames": "share_names",
    "machineId": "machine_id",
    "machineName": "machine_name",
    "workspaceNames": "workspace_names",
    "sqlitePath": "sqlite_path",
    "sessionCachePath": "session_cache_path",
}

_ENUM_FIELDS = {
    "sharing_profile": SharingProfile,
    "user_identity_mode": IdentityMode,
    "auth_mode": AuthMode,
    "backend": BackendType,
}

_OPTIONAL_TEXT_FIELDS = {
    "storage_account",
    "subscription_id",
    "resource_group",
    "user_alias",
    "entra_object_id",
    "share_consent_at",
    "machine_id",
    "machine_name",
}


@dataclass(frozen=True)
class SyncSettings:
    """Complete sync configuration."""
    enabled: bool = True
    dataset_id: str = DEFAULT_DATASET_ID
    lookback_days: int = DEFAULT_LOOKBACK_DAYS
    sharing_profile: SharingProfile = SharingProfile.OFF
    user_identity_mode: IdentityMode = IdentityMode.PSEUDONYMOUS
    auth_mode: AuthMode = AuthMode.ENTRA_ID
    backend: BackendType = BackendType.AZURE_TABLES
    storage_account: Optional[str] = None
    table_name: str = DEFAULT_TABLE_NAME
    subscription_id: Optional[str] = None
    resource_group: Optional[str] = None
    user_alias: Optional[str] = None
    entra_object_id: Optional[str] = None
    share_consent_at: Optional[str] = None
    share_names: bool = False
    machine_id: Optional[str] = None
    machine_name: Optional[str] = None
    workspace_names: Dict[str, str] = field(default_factory=dict)
    sqlite_path: str = DEFAULT_SQLITE_PATH
    session_cache_path: str = DEFAULT_SESSION_CACHE_PATH

    def __post_init__(self):
        """Validate settings values."""
        if not _DATASET_ID.match(self.dataset_id or ""):
            raise ConfigError("datasetId must be 1-64 characters of letters, digits, '.', '_' or '-'")
        if isinstance(self.lookback_days, bool) or not isinstance(self.lookback_days, int):
            raise ConfigError("lookbackDays must be an integer")
        if not MIN_LOOKBACK_DAYS <= self.lookback_days <= MAX_LOOKBACK_DAYS:
            raise ConfigError(f"lookbackDays must be between {MIN_LOOKBACK_DAYS} and {MAX_LOOKBACK_DAYS}")
        if not _TABLE_NAME.match(self.table_name or ""):
            raise ConfigError("tableName must be 3-63 alphanumeric characters starting with a letter")
        if self.storage_account is not None and not _STORAGE_ACCOUNT.match(self.storage_account):
            raise ConfigError("storageAccount must be 3-24 lowercase letters or digits")
        if self.share_consent_at is not None:
            try:
                datetime.fromisoformat(self.share_consent_at.replace("Z", "+00:00"))
            except ValueError:
                raise ConfigError("shareConsentAt must be an ISO-8601 timestamp")
        if not isinstance(self.workspace_names, dict):
            raise ConfigError("workspaceNames must be a mapping of workspace id to name")

    @property
    def is_configured(self) -> bool:
        """Whether the backend has everything it needs to sync."""
        if self.backend is BackendType.SQLITE:
            return bool(self.sqlite_path)
        return bool(self.storage_account and self.table_name)

    def backend_identity(self) -> Dict[str, str]:
        """Non-secret description of the backend, used to key query caches."""
        return {
            "backend": self.backend.value,
            "storageAccount": self.storage_account or "",
            "tableName": self.table_name,
            "datasetId": self.dataset_id,
            "authMode": self.auth_mode.value,
            "sqlitePath": self.sqlite_path if self.backend is BackendType.SQLITE else "",
        }

    def with_changes(self, **changes: Any) -> "SyncSettings":
        return replace(self, **changes)


def default_config_path() -> str:
    return os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH


def parse_settings(raw_config: Optional[Dict[str, Any]]) -> SyncSettings:
    """Validate a raw settings mapping (camelCase keys).

    Raises:
        ConfigError: On unknown keys, bad types or invalid values
    """
    if raw_config is None:
        return SyncSettings()
    if not isinstance(raw_config, dict):
        raise ConfigError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_KEY_MAP)
    if unknown_keys:
        raise ConfigError(f"Unknown configuration keys: {sorted(unknown_keys)}")

    values: Dict[str, Any] = {}
    for key, value in raw_config.items():
        name = _KEY_MAP[key]
        if value is None:
            continue
        if name in _ENUM_FIELDS:
            enum_type = _ENUM_FIELDS[name]
            try:
                values[name] = enum_type(value)
            except ValueError:
                valid = [member.value for member in enum_type]
                raise ConfigError(f"'{key}' must be one of: {valid}")
        elif name in ("enabled", "share_names"):
            if not isinstance(value, bool):
                raise ConfigError(f"'{key}' must be true or false")
            values[name] = value
        elif name == "lookback_days":
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError("'lookbackDays' must be an integer")
            values[name] = value
        elif name == "workspace_names":
            if not isinstance(value, dict):
                raise ConfigError("'workspaceNames' must be a mapping")
            values[name] = {str(k): str(v) for k, v in value.items()}
        elif name == "share_consent_at" and isinstance(value, datetime):
            values[name] = value.isoformat()
        else:
            if not isinstance(value, (str, int)) or isinstance(value, bool):
                raise ConfigError(f"'{key}' must be a string")
            text = str(value).strip()
            if name in _OPTIONAL_TEXT_FIELDS and not text:
                continue
            values[name] = text

    return SyncSettings(**values)


def load_settings(path: Optional[str] = None) -> SyncSettings:
    """Load and validate settings from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated SyncSettings

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigError: If YAML or configuration is invalid
    """
    config_path = Path(path or default_config_path()).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {config_path.name}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in settings file: {e}")

    return parse_settings(raw_config)


def settings_to_dict(settings: SyncSettings) -> Dict[str, Any]:
    """Serialize settings to camelCase keys, omitting unset optional values."""
    field_to_key = {name: key for key, name in _KEY_MAP.items()}
    data: Dict[str, Any] = {}
    for settings_field in fields(settings):
        value = getattr(settings, settings_field.name)
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, dict):
            value = dict(value)
        data[field_to_key[settings_field.name]] = value
    return data


def save_settings(settings: SyncSettings, path: Optional[str] = None) -> Path:
    """Write settings to YAML; returns the resolved path."""
    config_path = Path(path or default_config_path()).expanduser()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(settings_to_dict(settings), f, sort_keys=True, default_flow_style=False)
    return config_path


def export_settings(settings: SyncSettings) -> Dict[str, Any]:
    """Copy of the settings that is safe to share.

    Identifiers tied to a person or machine and local paths are redacted.
    """
    data = settings_to_dict(settings)
    for key in ("userAlias", "entraObjectId", "machineId", "machineName"):
        if data.get(key):
            data[key] = REDACTED_VALUE
    if data.get("shareConsentAt"):
        data["shareConsentAt"] = "[REDACTED_TIMESTAMP]"
    if data.get("workspaceNames"):
        data["workspaceNames"] = f"{REDACTED_VALUE} ({len(data['workspaceNames'])} names)"
    for key in ("sqlitePath", "sessionCachePath"):
        data.pop(key, None)
    data["note"] = "This export contains no secrets, machine ids, user ids or local paths."
    return data
