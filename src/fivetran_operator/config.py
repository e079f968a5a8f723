"""Operator settings and FivetranConnector constants.

All settings come from environment variables and are validated at load time
so a misconfigured operator fails on startup instead of mid-reconciliation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum


class SecretBackend(str, Enum):
    """Supported secret store backends."""

    HASHICORP = "hashicorp"
    AZURE_KEYVAULT = "azure-keyvault"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Custom resource coordinates
API_GROUP = "operator.dataverse.redhat.com"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"
KIND = "FivetranConnector"
PLURAL = "fivetranconnectors"

FINALIZER = "fivetran.dataverse.redhat.com/finalizer"
CONNECTOR_URL_TEMPLATE = "https://fivetran.com/dashboard/connectors/{connector_id}"

# Reconciliation markers
LABEL_FORCE_RECONCILE = f"{API_GROUP}/force-reconcile"
ANNOTATION_CONNECTOR_HASH = f"{API_GROUP}/connector-hash"
ANNOTATION_SCHEMA_HASH = f"{API_GROUP}/schema-hash"
ANNOTATION_CONNECTOR_ID = f"{API_GROUP}/connector-id"
ANNOTATION_ADOPT_CONNECTOR_ID = f"{API_GROUP}/adopt-existing-connector-id"

# Configuration constants with documented bounds
DEFAULT_FIVETRAN_BASE_URL = "https://api.fivetran.com/v1"
DEFAULT_NAMESPACE = "fivetran-operator"
DEFAULT_VAULT_SECRET_NAME = "fivetran-vault-secret"

DEFAULT_REQUEUE_AFTER_SECONDS = 300
MIN_REQUEUE_AFTER_SECONDS = 30
MAX_REQUEUE_AFTER_SECONDS = 3600

DEFAULT_POLL_INTERVAL_SECONDS = 30
MIN_POLL_INTERVAL_SECONDS = 5
MAX_POLL_INTERVAL_SECONDS = 3600

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
MIN_REQUEST_TIMEOUT_SECONDS = 1
MAX_REQUEST_TIMEOUT_SECONDS = 300

DEFAULT_VAULT_TOKEN_MIN_TTL_SECONDS = 300

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file

VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    fivetran_api_key: str
    fivetran_api_secret: str

    fivetran_base_url: str = DEFAULT_FIVETRAN_BASE_URL
    namespace: str = DEFAULT_NAMESPACE

    # Secret store
    secret_backend: SecretBackend = SecretBackend.HASHICORP
    vault_secret_name: str = DEFAULT_VAULT_SECRET_NAME
    vault_token_min_ttl_seconds: int = DEFAULT_VAULT_TOKEN_MIN_TTL_SECONDS
    key_vault_url: str | None = None
    azure_client_id: str | None = None

    # Timing
    requeue_after_seconds: int = DEFAULT_REQUEUE_AFTER_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not self.fivetran_api_key:
            errors.append("FIVETRAN_API_KEY is required")
        if not self.fivetran_api_secret:
            errors.append("FIVETRAN_API_SECRET is required")

        if not self.fivetran_base_url.startswith(("https://", "http://")):
            errors.append(f"FIVETRAN_BASE_URL must be an http(s) URL: {self.fivetran_base_url}")

        if not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"WATCH_NAMESPACE must be a valid namespace name: {self.namespace}")

        if self.secret_backend == SecretBackend.HASHICORP and not self.vault_secret_name:
            errors.append("FIVETRAN_VAULT_SECRET_NAME is required when SECRET_BACKEND is hashicorp")

        if self.secret_backend == SecretBackend.AZURE_KEYVAULT and not self.key_vault_url:
            errors.append("AZURE_KEY_VAULT_URL is required when SECRET_BACKEND is azure-keyvault")

        if not (
            MIN_REQUEUE_AFTER_SECONDS <= self.requeue_after_seconds <= MAX_REQUEUE_AFTER_SECONDS
        ):
            errors.append(
                f"REQUEUE_AFTER_SECONDS must be between {MIN_REQUEUE_AFTER_SECONDS} "
                f"and {MAX_REQUEUE_AFTER_SECONDS} seconds"
            )

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL_SECONDS must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"REQUEST_TIMEOUT_SECONDS must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if self.vault_token_min_ttl_seconds < 0:
            errors.append("VAULT_TOKEN_MIN_TTL_SECONDS cannot be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            FIVETRAN_API_KEY: Fivetran API key (required)
            FIVETRAN_API_SECRET: Fivetran API secret (required)
            FIVETRAN_BASE_URL: Fivetran REST API base URL
            WATCH_NAMESPACE: Namespace holding FivetranConnector resources
            SECRET_BACKEND: One of hashicorp, azure-keyvault (default: hashicorp)
            FIVETRAN_VAULT_SECRET_NAME: Kubernetes Secret with Vault AppRole credentials
            VAULT_TOKEN_MIN_TTL_SECONDS: Re-login when the Vault token TTL drops below this
            AZURE_KEY_VAULT_URL: Key Vault URL when SECRET_BACKEND is azure-keyvault
            AZURE_CLIENT_ID: Optional user-assigned managed identity client ID
            REQUEUE_AFTER_SECONDS: Delay before retrying a transient failure (default: 300)
            POLL_INTERVAL_SECONDS: Seconds between resource polls (default: 30)
            REQUEST_TIMEOUT_SECONDS: Timeout for outbound API calls (default: 30)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_backend(value: str | None) -> SecretBackend:
            if not value:
                return SecretBackend.HASHICORP
            try:
                return SecretBackend(value)
            except ValueError as e:
                valid = [b.value for b in SecretBackend]
                raise ConfigurationError(f"SECRET_BACKEND must be one of {valid}: {value}") from e

        return cls(
            fivetran_api_key=os.environ.get("FIVETRAN_API_KEY", ""),
            fivetran_api_secret=os.environ.get("FIVETRAN_API_SECRET", ""),
            fivetran_base_url=os.environ.get("FIVETRAN_BASE_URL", DEFAULT_FIVETRAN_BASE_URL),
            namespace=os.environ.get("WATCH_NAMESPACE", DEFAULT_NAMESPACE),
            secret_backend=get_backend(os.environ.get("SECRET_BACKEND")),
            vault_secret_name=os.environ.get(
                "FIVETRAN_VAULT_SECRET_NAME", DEFAULT_VAULT_SECRET_NAME
            ),
            vault_token_min_ttl_seconds=get_int(
                "VAULT_TOKEN_MIN_TTL_SECONDS", DEFAULT_VAULT_TOKEN_MIN_TTL_SECONDS
            ),
            key_vault_url=os.environ.get("AZURE_KEY_VAULT_URL"),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID"),
            requeue_after_seconds=get_int("REQUEUE_AFTER_SECONDS", DEFAULT_REQUEUE_AFTER_SECONDS),
            poll_interval_seconds=get_int("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS),
            request_timeout_seconds=get_int(
                "REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
        )
