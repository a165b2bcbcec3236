"""
Credentials for the table store data plane.

Two auth modes are supported:

- ``entraId``: an azure-identity token credential chain (Azure CLI login,
  managed identity, environment variables). Nothing is persisted.
- ``sharedKey``: the storage account key, read from the OS keyring and
  handed to the Table SDK as a named key credential.

The local SQLite backend needs no credential and uses ``LocalCredential``.
"""

import base64
import binascii
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from azure.core.credentials import AccessToken, AzureNamedKeyCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity.aio import (
    AzureCliCredential,
    ChainedTokenCredential,
    EnvironmentCredential,
    ManagedIdentityCredential,
)

from ai_usage_sync.core.errors import AuthError, ConfigError, ValidationError
from ai_usage_sync.observability.logging import get_logger

from . import secret_store

logger = get_logger(__name__)

STORAGE_SCOPE = "https://storage.azure.com/.default"

ENTRA_REMEDIATION = (
    "Sign in with 'az login', run on a host with a managed identity, or set "
    "AZURE_TENANT_ID/AZURE_CLIENT_ID/AZURE_CLIENT_SECRET."
)


class AuthMode(Enum):
    """How requests to the table store are authorized."""
    ENTRA_ID = "entraId"
    SHARED_KEY = "sharedKey"


class Credential:
    """Authorizes table store requests."""

    #: Secret values that must be redacted from diagnostics
    secrets: Sequence[str] = ()

    def table_credential(self) -> Optional[Any]:
        """Credential object handed to the Table SDK client."""
        return None

    async def aclose(self) -> None:
        pass


class LocalCredential(Credential):
    """No-op credential for local backends."""


class SharedKeyCredential(Credential):
    """Storage account key."""

    def __init__(self, account_name: str, account_key: str):
        if not account_name:
            raise ConfigError("Storage account is required for shared key auth.")
        try:
            base64.b64decode(account_key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AuthError(
                "Stored shared key is not valid base64.",
                "Run 'ai-usage-sync set-shared-key' to store it again.",
            ) from exc
        self.account_name = account_name
        self.secrets = (account_key,)
        self._named_key = AzureNamedKeyCredential(account_name, account_key)

    def table_credential(self) -> AzureNamedKeyCredential:
        return self._named_key


class EntraIdCredential(Credential):
    """Wraps an async azure-identity token credential for the storage scope."""

    def __init__(self, token_credential: Any):
        self.token_credential = token_credential

    def table_credential(self) -> Any:
        return self.token_credential

    async def get_token(self) -> AccessToken:
        """Acquire a token for the storage scope.

        Raises:
            AuthError: If no credential in the chain could sign in
        """
        try:
            return await self.token_credential.get_token(STORAGE_SCOPE)
        except ClientAuthenticationError as exc:
            logger.debug("Entra ID token request failed: %s", exc.message)
            raise AuthError("No Entra ID credential is available.", ENTRA_REMEDIATION) from exc

    async def aclose(self) -> None:
        await self.token_credential.close()


def default_token_credential() -> ChainedTokenCredential:
    """Azure CLI, then managed identity, then environment variables."""
    return ChainedTokenCredential(
        AzureCliCredential(),
        ManagedIdentityCredential(),
        EnvironmentCredential(),
    )


class CredentialProvider(ABC):
    """Resolves the credential for an auth mode."""

    @abstractmethod
    async def get_credential(self, auth_mode: AuthMode) -> Credential:
        """Return a usable credential.

        Raises:
            AuthError: If no credential is available for the mode
        """

    async def aclose(self) -> None:
        pass


class LocalCredentialProvider(CredentialProvider):
    """Provider for backends that need no authorization."""

    async def get_credential(self, auth_mode: AuthMode) -> Credential:
        return LocalCredential()


class DefaultCredentialProvider(CredentialProvider):
    """Resolves Entra ID token chains and keyring-backed shared keys."""

    def __init__(
        self,
        storage_account: str,
        token_credential: Optional[Any] = None,
        key_loader: Callable[[str], Optional[str]] = secret_store.get_shared_key,
    ):
        self.storage_account = storage_account
        self._entra: Optional[EntraIdCredential] = None
        if token_credential is not None:
            self._entra = EntraIdCredential(token_credential)
        self._key_loader = key_loader

    async def get_credential(self, auth_mode: AuthMode) -> Credential:
        if auth_mode is AuthMode.ENTRA_ID:
            if self._entra is None:
                self._entra = EntraIdCredential(default_token_credential())
            await self._entra.get_token()
            return self._entra

        if auth_mode is AuthMode.SHARED_KEY:
            key = self._key_loader(self.storage_account)
            if not key:
                raise AuthError(
                    f"No shared key is stored for storage account '{self.storage_account}'.",
                    "Run 'ai-usage-sync set-shared-key' or switch authMode to entraId.",
                )
            return SharedKeyCredential(self.storage_account, key)

        raise ValidationError(f"Auth mode must be one of: {[m.value for m in AuthMode]}")

    async def aclose(self) -> None:
        entra, self._entra = self._entra, None
        if entra is not None:
            await entra.aclose()
