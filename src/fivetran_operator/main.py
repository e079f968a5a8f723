"""Main entry point for the Fivetran connector operator.

The operator polls FivetranConnector resources in one namespace and keeps the
matching Fivetran connections in line with them. Secret references are
resolved from HashiCorp Vault (AppRole) or Azure Key Vault (Managed Identity).
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import UTC, datetime

from .config import Config, ConfigurationError, SecretBackend
from .fivetran_client import FivetranClient
from .reconciler import Reconciler
from .resource_store import KubernetesResourceStore, ResourceStoreError, load_kube_config
from .runner import Runner
from .secrets import SecretStoreAuthenticationError
from .security import CredentialLeakError, enforce_no_credentials_in_env
from .vault import HashiCorpVaultStore, KeyVaultSecretStore, VaultCredentials

# LogRecord attributes that are not user supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from client libraries
    for noisy in ("httpx", "httpcore", "kubernetes", "urllib3", "azure"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@dataclass
class Components:
    """Long-lived clients shared by every reconciliation pass."""

    store: KubernetesResourceStore
    provider: FivetranClient
    secret_store: HashiCorpVaultStore | KeyVaultSecretStore
    reconciler: Reconciler

    def close(self) -> None:
        self.provider.close()
        self.secret_store.close()


def build_secret_store(
    config: Config, store: KubernetesResourceStore
) -> HashiCorpVaultStore | KeyVaultSecretStore:
    """Create the secret store selected by SECRET_BACKEND."""
    match config.secret_backend:
        case SecretBackend.AZURE_KEYVAULT:
            assert config.key_vault_url is not None
            return KeyVaultSecretStore(config.key_vault_url, client_id=config.azure_client_id)
        case SecretBackend.HASHICORP:

            def load_credentials() -> VaultCredentials:
                try:
                    data = store.read_secret_data(config.vault_secret_name)
                except ResourceStoreError as e:
                    raise SecretStoreAuthenticationError(
                        f"failed to load vault credentials: {e}"
                    ) from e
                return VaultCredentials.from_secret_data(data)

            return HashiCorpVaultStore(
                load_credentials,
                min_token_ttl_seconds=config.vault_token_min_ttl_seconds,
                timeout_seconds=config.request_timeout_seconds,
            )
    raise ConfigurationError(f"Unsupported secret backend: {config.secret_backend}")


def build_components(config: Config) -> Components:
    """Wire the reconciler to Kubernetes, Fivetran and the secret store."""
    load_kube_config()
    store = KubernetesResourceStore(config.namespace)
    provider = FivetranClient(
        config.fivetran_api_key,
        config.fivetran_api_secret,
        base_url=config.fivetran_base_url,
        timeout_seconds=config.request_timeout_seconds,
    )
    secret_store = build_secret_store(config, store)
    reconciler = Reconciler(
        store,
        provider,
        secret_store,
        requeue_after_seconds=config.requeue_after_seconds,
    )
    return Components(
        store=store,
        provider=provider,
        secret_store=secret_store,
        reconciler=reconciler,
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, 1 for errors, 2 for credential leaks).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    try:
        enforce_no_credentials_in_env()
    except CredentialLeakError as e:
        logger.critical("Security violation: credentials detected in environment", extra={"error": str(e)})
        return 2

    logger.info(
        "Starting Fivetran connector operator",
        extra={
            "namespace": config.namespace,
            "secret_backend": config.secret_backend.value,
            "fivetran_base_url": config.fivetran_base_url,
        },
    )

    try:
        components = build_components(config)
    except CredentialLeakError as e:
        logger.critical("Security violation: credentials detected in environment", extra={"error": str(e)})
        return 2
    except Exception as e:
        logger.error(
            "Failed to initialize operator",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    runner = Runner(
        components.store,
        components.reconciler,
        poll_interval_seconds=config.poll_interval_seconds,
    )

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        runner.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await runner.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        components.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
