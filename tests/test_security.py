"""Tests for credential hygiene.

The operator must refuse to start with secret store credentials in its
environment, and must never print resolved secret values.
"""

from __future__ import annotations

import os
from unittest import mock

import pytest

from fivetran_operator.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    MASK,
    CredentialLeakError,
    enforce_no_credentials_in_env,
    get_managed_identity_credential,
    mask_resolved,
)
from fivetran_operator.vault import KeyVaultSecretStore

VAULT_URL = "https://fivetran-operator.vault.azure.net"


class TestCredentialEnforcement:
    """Tests for the environment credential check."""

    def test_operator_environment_passes(self) -> None:
        """Test that the settings the operator does read are allowed."""
        env = {"FIVETRAN_API_KEY": "key", "AZURE_CLIENT_ID": "client-1", "VAULT_ADDR": "https://vault"}
        with mock.patch.dict(os.environ, env, clear=True):
            enforce_no_credentials_in_env()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var blocks startup."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(CredentialLeakError) as exc_info:
                enforce_no_credentials_in_env()

            assert env_var in str(exc_info.value)

    def test_vault_token_rejected(self) -> None:
        """Test that a Vault token in the environment is rejected."""
        with mock.patch.dict(os.environ, {"VAULT_TOKEN": "hvs.abc"}, clear=True):
            with pytest.raises(CredentialLeakError) as exc_info:
                enforce_no_credentials_in_env()

            assert "Kubernetes Secret" in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        """Test that a variable set to the empty string is not a leak."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_no_credentials_in_env()


class TestKeyVaultIdentity:
    """Tests for the identity used by the Key Vault backend."""

    def test_leaked_client_secret_blocks_key_vault(self) -> None:
        """Test that the Key Vault store is never built next to a client secret."""
        with (
            mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}, clear=True),
            mock.patch("fivetran_operator.vault.SecretClient") as client_cls,
        ):
            with pytest.raises(CredentialLeakError):
                KeyVaultSecretStore(VAULT_URL)

        client_cls.assert_not_called()

    @mock.patch("fivetran_operator.vault.SecretClient")
    @mock.patch("fivetran_operator.security.ManagedIdentityCredential")
    def test_system_assigned_identity(
        self, credential_cls: mock.Mock, client_cls: mock.Mock
    ) -> None:
        """Test that the node identity is used without a client ID."""
        with mock.patch.dict(os.environ, {}, clear=True):
            KeyVaultSecretStore(VAULT_URL)

        credential_cls.assert_called_once_with()
        client_cls.assert_called_once_with(
            vault_url=VAULT_URL, credential=credential_cls.return_value
        )

    @mock.patch("fivetran_operator.vault.SecretClient")
    @mock.patch("fivetran_operator.security.ManagedIdentityCredential")
    def test_user_assigned_identity(
        self, credential_cls: mock.Mock, client_cls: mock.Mock
    ) -> None:
        """Test that AZURE_CLIENT_ID selects a user-assigned identity."""
        with mock.patch.dict(os.environ, {}, clear=True):
            get_managed_identity_credential("0f3c6a2e-operator")

        credential_cls.assert_called_once_with(client_id="0f3c6a2e-operator")


class TestMaskResolved:
    """Tests for masking resolved documents."""

    def test_masks_referenced_leaves_only(self) -> None:
        """Test that only values that came from references are masked."""
        declared = {
            "host": "db.example.com",
            "password": "vault:secret/db#password",
            "nested": {"token": "vault:secret/api#token", "port": 5432},
            "hosts": ["a", "vault:secret/db#replica"],
        }
        resolved = {
            "host": "db.example.com",
            "password": "hunter2",
            "nested": {"token": "t0k3n", "port": 5432},
            "hosts": ["a", "replica.example.com"],
        }

        masked = mask_resolved(declared, resolved)

        assert masked == {
            "host": "db.example.com",
            "password": MASK,
            "nested": {"token": MASK, "port": 5432},
            "hosts": ["a", MASK],
        }

    def test_structured_secret_value_is_masked_whole(self) -> None:
        """Test that a reference resolving to a mapping is masked entirely."""
        masked = mask_resolved({"cert": "vault:pki#bundle"}, {"cert": {"key": "private"}})

        assert masked == {"cert": MASK}
