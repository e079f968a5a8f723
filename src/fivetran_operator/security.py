"""Credential hygiene for the operator process.

The operator authenticates to its secret stores without long-lived secrets
in its own environment:
- Azure Key Vault is reached with a Managed Identity only
- HashiCorp Vault is reached with AppRole credentials read from a
  Kubernetes Secret at runtime, never from environment variables

Resolved secret values never reach logs or CLI output unmasked.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Secret material that must never reach the operator through its environment
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
    "VAULT_TOKEN",
    "VAULT_SECRET_ID",
)

MASK = "****"


class CredentialLeakError(Exception):
    """Raised when a forbidden credential is present in the environment.

    Startup is aborted: the operator must not run with such credentials.
    """

    pass


def enforce_no_credentials_in_env() -> None:
    """Refuse to start when credentials are exposed through the environment.

    Raises:
        CredentialLeakError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Credential found in environment",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise CredentialLeakError(
                f"{env_var} must not be set. Secret store credentials are read from "
                "a Kubernetes Secret (hashicorp) or a Managed Identity (azure-keyvault)."
            )

    logger.info(
        "No credentials found in environment",
        extra={"security_event": "environment_verified"},
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Credential for the Key Vault backend.

    ``client_id`` selects a user-assigned identity (AZURE_CLIENT_ID); without
    it the pod's system-assigned identity is used.

    Raises:
        CredentialLeakError: If the environment carries secret credentials.
    """
    enforce_no_credentials_in_env()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def mask_resolved(declared: Any, resolved: Any) -> Any:
    """Mask every leaf of ``resolved`` that came from a ``vault:`` reference.

    ``declared`` is the document before resolution; both share one shape.
    """
    match declared:
        case dict():
            return {key: mask_resolved(value, resolved[key]) for key, value in declared.items()}
        case list() | tuple():
            return [mask_resolved(item, resolved[i]) for i, item in enumerate(declared)]
        case str() if declared.startswith("vault:"):
            return MASK
        case _:
            return resolved
