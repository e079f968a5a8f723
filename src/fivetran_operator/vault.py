"""Secret store backends.

Two backends implement the SecretStore protocol:

- HashiCorpVaultStore: Vault KV v2 over HTTP, logged in with AppRole. The
  AppRole credentials live in a Kubernetes Secret and are re-read whenever a
  new login is needed. The token is reused while its remaining TTL stays above
  a threshold.
- KeyVaultSecretStore: Azure Key Vault reached with a Managed Identity. Each
  path maps to one secret whose value is a JSON object of key/value pairs.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.keyvault.secrets import SecretClient

from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS, DEFAULT_VAULT_TOKEN_MIN_TTL_SECONDS
from .security import get_managed_identity_credential
from .secrets import SecretStoreAuthenticationError, SecretStoreError

logger = logging.getLogger(__name__)

# Keys of the Kubernetes Secret holding the AppRole credentials
SECRET_KEY_ADDRESS = "address"
SECRET_KEY_ROLE_ID = "roleId"
SECRET_KEY_SECRET_ID = "secretId"
SECRET_KEY_MOUNT_PATH = "mountPath"


# =============================================================================
# HashiCorp Vault
# =============================================================================


@dataclass(frozen=True)
class VaultCredentials:
    """AppRole login material for one Vault server."""

    address: str
    role_id: str
    secret_id: str
    mount_path: str

    def __post_init__(self) -> None:
        errors: list[str] = []
        if not self.address:
            errors.append("vault address is required")
        if not self.role_id:
            errors.append("vault roleID is required")
        if not self.secret_id:
            errors.append("vault secretID is required")
        if not self.mount_path:
            errors.append("vault mountPath is required")
        if errors:
            raise SecretStoreAuthenticationError("; ".join(errors))

    @classmethod
    def from_secret_data(cls, data: Mapping[str, str]) -> VaultCredentials:
        """Build from the decoded data of the credentials Secret."""
        return cls(
            address=data.get(SECRET_KEY_ADDRESS, ""),
            role_id=data.get(SECRET_KEY_ROLE_ID, ""),
            secret_id=data.get(SECRET_KEY_SECRET_ID, ""),
            mount_path=data.get(SECRET_KEY_MOUNT_PATH, ""),
        )

    def __repr__(self) -> str:
        return f"VaultCredentials(address={self.address!r}, mount_path={self.mount_path!r})"


class HashiCorpVaultStore:
    """Vault KV v2 reader with AppRole login.

    Thread-safe: the token is guarded by a lock, the httpx client is shared.
    The token's expiry is tracked from its lease, so Vault is only asked
    about the token again once it comes close to the TTL threshold.
    """

    def __init__(
        self,
        credentials_loader: Callable[[], VaultCredentials],
        *,
        min_token_ttl_seconds: int = DEFAULT_VAULT_TOKEN_MIN_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credentials_loader = credentials_loader
        self._min_token_ttl_seconds = min_token_ttl_seconds
        self._timeout = timeout_seconds
        self._transport = transport
        self._clock = clock
        self._lock = threading.Lock()
        self._client: httpx.Client | None = None
        self._credentials: VaultCredentials | None = None
        self._token: str | None = None
        self._token_expires_at = 0.0

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def read_secret(self, path: str) -> Mapping[str, Any] | None:
        """Read the latest version of the KV v2 secret at ``path``."""
        client, credentials, token = self._session()
        url = f"/v1/{credentials.mount_path.strip('/')}/data/{path.lstrip('/')}"

        try:
            response = client.get(url, headers={"X-Vault-Token": token})
        except httpx.HTTPError as e:
            raise SecretStoreError(f"vault request failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SecretStoreError(
                f"vault returned status {response.status_code} for path '{path}'"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SecretStoreError(f"vault returned invalid JSON for path '{path}'") from e

        # KV v2 nests the payload under data.data
        envelope = body.get("data") or {}
        return envelope.get("data") or {}

    def token_is_valid(self) -> bool:
        """True when Vault reports more TTL left than the threshold."""
        with self._lock:
            return self._lookup_token_locked()

    def _session(self) -> tuple[httpx.Client, VaultCredentials, str]:
        with self._lock:
            if not self._token_is_fresh_locked() and not self._lookup_token_locked():
                logger.info("Vault client is not initialized or expired, logging in")
                self._login_locked()
            assert self._client is not None
            assert self._credentials is not None
            assert self._token is not None
            return self._client, self._credentials, self._token

    def _token_is_fresh_locked(self) -> bool:
        if self._client is None or self._token is None:
            return False
        return self._token_expires_at - self._clock() > self._min_token_ttl_seconds

    def _lookup_token_locked(self) -> bool:
        """Ask Vault for the remaining TTL, which may have been extended."""
        if self._client is None or self._token is None:
            return False
        try:
            response = self._client.get(
                "/v1/auth/token/lookup-self", headers={"X-Vault-Token": self._token}
            )
        except httpx.HTTPError:
            return False
        if response.status_code != 200:
            return False
        try:
            ttl = int(response.json()["data"]["ttl"])
        except (ValueError, KeyError, TypeError):
            return False
        self._token_expires_at = self._clock() + ttl
        return ttl > self._min_token_ttl_seconds

    def _login_locked(self) -> None:
        credentials = self._credentials_loader()

        if self._client is None or self._credentials is None or (
            self._credentials.address != credentials.address
        ):
            if self._client is not None:
                self._client.close()
            self._client = httpx.Client(
                base_url=credentials.address,
                timeout=self._timeout,
                transport=self._transport,
            )
        self._credentials = credentials
        self._token = None

        try:
            response = self._client.post(
                "/v1/auth/approle/login",
                json={"role_id": credentials.role_id, "secret_id": credentials.secret_id},
            )
        except httpx.HTTPError as e:
            raise SecretStoreAuthenticationError(f"vault login failed: {e}") from e

        if response.status_code != 200:
            raise SecretStoreAuthenticationError(
                f"vault login failed with status {response.status_code}"
            )

        try:
            auth = response.json()["auth"]
            token = auth["client_token"]
            lease_seconds = int(auth.get("lease_duration") or 0)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SecretStoreAuthenticationError(
                "no auth info was returned after login"
            ) from e
        if not token:
            raise SecretStoreAuthenticationError("no auth info was returned after login")

        self._token = token
        # A lease of 0 is checked against Vault on the next read
        self._token_expires_at = self._clock() + lease_seconds
        logger.info(
            "Vault client initialized successfully",
            extra={"vault_address": credentials.address, "lease_seconds": lease_seconds},
        )


# =============================================================================
# Azure Key Vault
# =============================================================================


def key_vault_secret_name(path: str) -> str:
    """Key Vault names allow only alphanumerics and dashes."""
    return "-".join(part for part in path.replace("_", "-").split("/") if part)


class KeyVaultSecretStore:
    """Azure Key Vault reader authenticated with a Managed Identity."""

    def __init__(
        self,
        vault_url: str,
        client_id: str | None = None,
        client: SecretClient | None = None,
    ) -> None:
        if client is None:
            credential = get_managed_identity_credential(client_id)
            client = SecretClient(vault_url=vault_url, credential=credential)
        self._client = client
        self.vault_url = vault_url

    def close(self) -> None:
        self._client.close()

    def read_secret(self, path: str) -> Mapping[str, Any] | None:
        """Read ``path`` as one secret holding a JSON object."""
        name = key_vault_secret_name(path)
        try:
            secret = self._client.get_secret(name)
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise SecretStoreError(f"key vault request failed for '{name}': {e}") from e

        if not secret.value:
            return {}
        try:
            data = json.loads(secret.value)
        except json.JSONDecodeError as e:
            raise SecretStoreError(
                f"key vault secret '{name}' is not a JSON object"
            ) from e
        if not isinstance(data, dict):
            raise SecretStoreError(f"key vault secret '{name}' is not a JSON object")
        return data
