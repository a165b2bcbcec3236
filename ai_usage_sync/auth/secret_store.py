"""
Storage shared key persistence in the OS keyring.

The key never touches the YAML settings file or exported configuration.
"""

from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from ai_usage_sync.core.errors import AuthError, ConfigError

KEYRING_SERVICE = "ai-usage-sync"


def _username(storage_account: str) -> str:
    if not storage_account or not storage_account.strip():
        raise ConfigError(
            "Storage account is not configured.",
            "Run 'ai-usage-sync init' first.",
        )
    return f"storage-shared-key:{storage_account.strip()}"


def get_shared_key(storage_account: str) -> Optional[str]:
    """Return the stored shared key for an account, or None when unset."""
    try:
        value = keyring.get_password(KEYRING_SERVICE, _username(storage_account))
    except KeyringError as exc:
        raise AuthError(f"Could not read the shared key from the OS keyring: {type(exc).__name__}") from exc
    return value or None


def set_shared_key(storage_account: str, shared_key: str) -> None:
    """Store the shared key for an account.

    Raises:
        AuthError: If the key is blank or the keyring is unavailable
    """
    if not shared_key or not shared_key.strip():
        raise AuthError("Shared key is required.")
    try:
        keyring.set_password(KEYRING_SERVICE, _username(storage_account), shared_key.strip())
    except KeyringError as exc:
        raise AuthError(f"Could not store the shared key in the OS keyring: {type(exc).__name__}") from exc


def clear_shared_key(storage_account: str) -> bool:
    """Remove the stored key; returns False when none was stored."""
    try:
        keyring.delete_password(KEYRING_SERVICE, _username(storage_account))
    except PasswordDeleteError:
        return False
    except KeyringError as exc:
        raise AuthError(f"Could not clear the shared key from the OS keyring: {type(exc).__name__}") from exc
    return True
