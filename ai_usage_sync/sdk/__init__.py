"""
SDK for AI Usage Sync.

Provides programmatic access to rollup upload, queries and privacy controls.
"""

from .facade import DeletionReport, OperationResult, ProvisioningResult, UsageSyncFacade

__all__ = ["DeletionReport", "OperationResult", "ProvisioningResult", "UsageSyncFacade"]
