"""
Error taxonomy for usage sync operations.

Every failure raised inside the package derives from UsageSyncError and
carries a ``kind`` so callers can report it without inspecting types.
"""

from typing import Optional


class UsageSyncError(Exception):
    """Base class for all usage sync failures."""
    kind = "error"

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def __str__(self) -> str:
        if self.remediation:
            return f"{self.message} {self.remediation}"
        return self.message


class ValidationError(UsageSyncError):
    """Bad user input: surfaced immediately, never retried."""
    kind = "validation"


class AliasValidationError(ValidationError):
    """A team alias violated the PII-avoidance policy."""

    def __init__(self, rule: str, message: str):
        super().__init__(message)
        self.rule = rule


class ConfigError(UsageSyncError):
    """Missing or inconsistent backend configuration."""
    kind = "configuration"


class AuthError(UsageSyncError):
    """Missing or invalid credential."""
    kind = "auth"


class PermissionDeniedError(UsageSyncError):
    """The credential is valid but lacks a data-plane role."""
    kind = "permission"

    def __init__(self, role: str, message: str, remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.role = role


class NetworkError(UsageSyncError):
    """Transport failure; deferred to the next scheduled tick."""
    kind = "network"


class SyncTimeoutError(NetworkError):
    """A store call exceeded its per-call timeout."""
    kind = "timeout"


class StoreError(UsageSyncError):
    """Any other non-success response from the table store."""
    kind = "store"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PartialBatchError(UsageSyncError):
    """Some upload batches were confirmed, others failed."""
    kind = "partial"

    def __init__(self, succeeded: int, failed: int, message: Optional[str] = None):
        super().__init__(message or f"{succeeded} rows uploaded, {failed} rows failed")
        self.succeeded = succeeded
        self.failed = failed
