"""
Unit tests for credentials and the keyring-backed secret store.
"""

from unittest.mock import patch

import pytest
from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import CredentialUnavailableError
from azure.identity.aio import AzureCliCredential, EnvironmentCredential, ManagedIdentityCredential
from keyring.errors import KeyringError, PasswordDeleteError

from ai_usage_sync.auth import secret_store
from ai_usage_sync.auth.credentials import (
    STORAGE_SCOPE,
    AuthMode,
    DefaultCredentialProvider,
    EntraIdCredential,
    LocalCredential,
    LocalCredentialProvider,
    SharedKeyCredential,
    default_token_credential,
)
from ai_usage_sync.core.errors import AuthError, ConfigError

from conftest import FakeTokenCredential

ACCOUNT_KEY = "c2VjcmV0LWtleS1ieXRlcw=="


class TestSharedKeyCredential:
    """Test the storage account key credential."""

    def test_invalid_key_rejected(self):
        with pytest.raises(AuthError, match="not valid base64"):
            SharedKeyCredential("acct", "not base64!")

    def test_account_required(self):
        with pytest.raises(ConfigError):
            SharedKeyCredential("", ACCOUNT_KEY)

    def test_table_credential_is_named_key(self):
        table_credential = SharedKeyCredential("acct", ACCOUNT_KEY).table_credential()
        assert isinstance(table_credential, AzureNamedKeyCredential)
        assert table_credential.named_key.name == "acct"
        assert table_credential.named_key.key == ACCOUNT_KEY

    def test_key_is_a_secret(self):
        assert SharedKeyCredential("acct", ACCOUNT_KEY).secrets == (ACCOUNT_KEY,)


class TestEntraIdCredential:
    """Test the wrapper around azure-identity token credentials."""

    async def test_requests_storage_scope(self):
        token_credential = FakeTokenCredential("entra-token")
        token = await EntraIdCredential(token_credential).get_token()
        assert token.token == "entra-token"
        assert token_credential.scopes == [(STORAGE_SCOPE,)]

    async def test_table_credential_is_token_credential(self):
        token_credential = FakeTokenCredential()
        assert EntraIdCredential(token_credential).table_credential() is token_credential

    async def test_unavailable_chain(self):
        token_credential = FakeTokenCredential(error=CredentialUnavailableError(message="az not found"))
        with pytest.raises(AuthError, match="No Entra ID credential") as exc_info:
            await EntraIdCredential(token_credential).get_token()
        assert "az login" in exc_info.value.remediation

    async def test_rejected_sign_in(self):
        token_credential = FakeTokenCredential(error=ClientAuthenticationError(message="AADSTS7000215"))
        with pytest.raises(AuthError):
            await EntraIdCredential(token_credential).get_token()

    async def test_aclose_closes_token_credential(self):
        token_credential = FakeTokenCredential()
        await EntraIdCredential(token_credential).aclose()
        assert token_credential.closed


class TestDefaultTokenCredential:
    """Test the Entra ID credential chain."""

    async def test_chain_order(self):
        chain = default_token_credential()
        try:
            assert [type(credential) for credential in chain.credentials] == [
                AzureCliCredential,
                ManagedIdentityCredential,
                EnvironmentCredential,
            ]
        finally:
            await chain.close()


class TestCredentialProviders:
    """Test resolving credentials per auth mode."""

    async def test_shared_key_from_keyring(self):
        provider = DefaultCredentialProvider("acct", key_loader=lambda account: ACCOUNT_KEY)
        credential = await provider.get_credential(AuthMode.SHARED_KEY)
        assert isinstance(credential, SharedKeyCredential)

    async def test_shared_key_missing(self):
        provider = DefaultCredentialProvider("acct", key_loader=lambda account: None)
        with pytest.raises(AuthError, match="No shared key is stored") as exc_info:
            await provider.get_credential(AuthMode.SHARED_KEY)
        assert "set-shared-key" in exc_info.value.remediation

    async def test_entra_uses_token_credential(self):
        token_credential = FakeTokenCredential()
        provider = DefaultCredentialProvider("acct", token_credential=token_credential)

        credential = await provider.get_credential(AuthMode.ENTRA_ID)

        assert isinstance(credential, EntraIdCredential)
        assert credential.token_credential is token_credential
        assert token_credential.scopes == [(STORAGE_SCOPE,)]
        assert await provider.get_credential(AuthMode.ENTRA_ID) is credential

    async def test_entra_unavailable(self):
        token_credential = FakeTokenCredential(error=CredentialUnavailableError(message="no identity"))
        provider = DefaultCredentialProvider("acct", token_credential=token_credential)
        with pytest.raises(AuthError, match="No Entra ID credential"):
            await provider.get_credential(AuthMode.ENTRA_ID)

    async def test_aclose_closes_token_credential(self):
        token_credential = FakeTokenCredential()
        provider = DefaultCredentialProvider("acct", token_credential=token_credential)
        await provider.aclose()
        assert token_credential.closed

    async def test_local_provider(self):
        credential = await LocalCredentialProvider().get_credential(AuthMode.ENTRA_ID)
        assert isinstance(credential, LocalCredential)
        assert credential.table_credential() is None


class TestSecretStore:
    """Test shared key persistence in the OS keyring."""

    @patch("ai_usage_sync.auth.secret_store.keyring")
    def test_set_and_get(self, mock_keyring):
        mock_keyring.get_password.return_value = ACCOUNT_KEY

        secret_store.set_shared_key("acct", f"  {ACCOUNT_KEY} ")

        mock_keyring.set_password.assert_called_once_with("ai-usage-sync", "storage-shared-key:acct", ACCOUNT_KEY)
        assert secret_store.get_shared_key("acct") == ACCOUNT_KEY

    @patch("ai_usage_sync.auth.secret_store.keyring")
    def test_get_missing(self, mock_keyring):
        mock_keyring.get_password.return_value = None
        assert secret_store.get_shared_key("acct") is None

    @patch("ai_usage_sync.auth.secret_store.keyring")
    def test_clear_when_absent(self, mock_keyring):
        mock_keyring.delete_password.side_effect = PasswordDeleteError("absent")
        assert secret_store.clear_shared_key("acct") is False

    @patch("ai_usage_sync.auth.secret_store.keyring")
    def test_keyring_failure(self, mock_keyring):
        mock_keyring.get_password.side_effect = KeyringError("locked")
        with pytest.raises(AuthError):
            secret_store.get_shared_key("acct")

    def test_blank_key_rejected(self):
        with pytest.raises(AuthError, match="Shared key is required"):
            secret_store.set_shared_key("acct", "   ")

    def test_account_required(self):
        with pytest.raises(ConfigError):
            secret_store.get_shared_key("")
