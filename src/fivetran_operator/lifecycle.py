"""Connector lifecycle: create, adopt, update, delete and setup tests.

Where the remote connection identity comes from decides what to do:

    UnknownIdentity                 -> create
    RecoveringIdentity(id, source)  -> adopt (validate, then take over id)
    KnownIdentity(id)               -> update

Every update sends the full payload, so repeating it is harmless.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import ANNOTATION_ADOPT_CONNECTOR_ID, ANNOTATION_CONNECTOR_ID
from .fivetran_client import ConnectorProvider, FivetranAPIError
from .models import ConnectorConfig, FivetranConnector

logger = logging.getLogger(__name__)

SETUP_TEST_PASSED = "PASSED"
SETUP_TEST_SKIPPED = "SKIPPED"
SETUP_TEST_WARNING = "WARNING"


class ConnectorValidationError(Exception):
    """An existing connection does not match the declared spec. Terminal."""

    pass


class SetupTestsFailedError(Exception):
    """At least one setup test reported a failure."""

    def __init__(self, failures: list[str], warnings: list[str]) -> None:
        self.failures = failures
        self.warnings = warnings
        super().__init__(f"setup tests failed: {'; '.join(failures)}")


# =============================================================================
# Identity
# =============================================================================


class IdentitySource(str, Enum):
    """Where a not-yet-confirmed identity was found."""

    ADOPTION = "adoption"
    BACKUP = "backup"


@dataclass(frozen=True)
class UnknownIdentity:
    pass


@dataclass(frozen=True)
class RecoveringIdentity:
    connector_id: str
    source: IdentitySource


@dataclass(frozen=True)
class KnownIdentity:
    connector_id: str


Identity = UnknownIdentity | RecoveringIdentity | KnownIdentity


def identity_of(resource: FivetranConnector) -> Identity:
    """Derive the identity state from status and annotations.

    The status field is authoritative. An explicit adoption request takes
    precedence over the backup copy of a previously known ID.
    """
    if resource.status.connector_id:
        return KnownIdentity(resource.status.connector_id)

    annotations = resource.metadata.annotations
    if adopt_id := annotations.get(ANNOTATION_ADOPT_CONNECTOR_ID):
        return RecoveringIdentity(adopt_id, IdentitySource.ADOPTION)
    if backup_id := annotations.get(ANNOTATION_CONNECTOR_ID):
        return RecoveringIdentity(backup_id, IdentitySource.BACKUP)
    return UnknownIdentity()


def infer_schema_name(config: Mapping[str, Any] | None) -> str:
    """Destination schema name a connection with ``config`` would write to.

    ``schema_prefix`` wins. Otherwise ``schema`` is used, suffixed with
    ``table_group_name`` or, failing that, ``table``. Returns "" when the
    config does not say.
    """
    if not config:
        return ""

    prefix = config.get("schema_prefix")
    if isinstance(prefix, str) and prefix:
        return prefix

    schema = config.get("schema")
    if not isinstance(schema, str) or not schema:
        return ""

    table_group = config.get("table_group_name")
    if isinstance(table_group, str) and table_group:
        return f"{schema}.{table_group}"
    table = config.get("table")
    if isinstance(table, str) and table:
        return f"{schema}.{table}"
    return schema


# =============================================================================
# Lifecycle
# =============================================================================


@dataclass(frozen=True)
class ApplyResult:
    connector_id: str
    created: bool = False


@dataclass
class SetupTestOutcome:
    skipped: bool = False
    warnings: list[str] = field(default_factory=list)


class ConnectorLifecycle:
    """Maps the declared connector onto provider calls."""

    def __init__(self, provider: ConnectorProvider) -> None:
        self._provider = provider

    def apply(
        self,
        identity: KnownIdentity | UnknownIdentity,
        connector: ConnectorConfig,
        config: dict[str, Any] | None,
        auth: dict[str, Any] | None,
    ) -> ApplyResult:
        """Update a known connection or create a new one.

        A RecoveringIdentity is not accepted: it has to pass adopt() and be
        recorded as known before it is updated.
        """
        match identity:
            case KnownIdentity(connector_id=connector_id):
                self.update(connector_id, connector, config, auth)
                return ApplyResult(connector_id)
            case UnknownIdentity():
                return ApplyResult(self.create(connector, config, auth), created=True)
        raise TypeError(f"unexpected identity: {identity!r}")

    def create(
        self,
        connector: ConnectorConfig,
        config: dict[str, Any] | None,
        auth: dict[str, Any] | None,
    ) -> str:
        """Create a paused connection and return its ID."""
        payload = connector.to_create_payload(config, auth)
        payload["paused"] = True

        logger.info(
            "Creating new Fivetran connector",
            extra={"service": connector.service, "group_id": connector.group_id},
        )
        connector_id = self._provider.create_connection(payload)
        logger.info("Connector created successfully", extra={"connector_id": connector_id})
        return connector_id

    def adopt(
        self,
        connector_id: str,
        connector: ConnectorConfig,
        config: Mapping[str, Any] | None,
        source: IdentitySource = IdentitySource.ADOPTION,
    ) -> None:
        """Validate that ``connector_id`` may be bound to this declaration.

        Raises:
            ConnectorValidationError: If service, group or schema name differ.
            FivetranAPIError: If the connection cannot be read.
        """
        logger.info(
            "Starting existing connector adoption",
            extra={"connector_id": connector_id, "source": source.value},
        )
        existing = self._provider.get_connection(connector_id)

        if connector.service != existing.service:
            raise ConnectorValidationError(
                f"service mismatch: spec has '{connector.service}', "
                f"existing connector has '{existing.service}'"
            )
        if connector.group_id != existing.group_id:
            raise ConnectorValidationError(
                f"group_id mismatch: spec has '{connector.group_id}', "
                f"existing connector has '{existing.group_id}'"
            )

        expected_schema = infer_schema_name(config)
        if expected_schema and expected_schema != existing.schema_name:
            raise ConnectorValidationError(
                f"schema mismatch: expected '{expected_schema}', got '{existing.schema_name}'"
            )

        logger.info(
            "Successfully adopted existing connector",
            extra={
                "connector_id": connector_id,
                "service": existing.service,
                "group_id": existing.group_id,
                "schema": existing.schema_name,
            },
        )

    def update(
        self,
        connector_id: str,
        connector: ConnectorConfig,
        config: dict[str, Any] | None,
        auth: dict[str, Any] | None,
    ) -> None:
        logger.info("Updating Fivetran connector", extra={"connector_id": connector_id})
        self._provider.update_connection(connector_id, connector.to_update_payload(config, auth))

    def delete(self, connector_id: str) -> None:
        """Delete the remote connection. Already gone counts as success."""
        try:
            self._provider.delete_connection(connector_id)
        except FivetranAPIError as e:
            if not e.is_not_found:
                raise
            logger.info("Fivetran connector already deleted", extra={"connector_id": connector_id})
            return
        logger.info("Successfully deleted Fivetran connector", extra={"connector_id": connector_id})

    def run_setup_tests(self, connector_id: str, connector: ConnectorConfig) -> SetupTestOutcome:
        """Run setup tests unless disabled.

        PASSED and SKIPPED results are fine, WARNING results are collected as
        ``"title: message"``, everything else is a failure.

        Raises:
            SetupTestsFailedError: If any test failed.
        """
        if not connector.setup_tests_enabled:
            logger.info("Skipping setup tests", extra={"connector_id": connector_id})
            return SetupTestOutcome(skipped=True)

        trust_certificates = connector.trust_certificates is not False
        trust_fingerprints = connector.trust_fingerprints is not False

        logger.info("Running setup tests", extra={"connector_id": connector_id})
        results = self._provider.run_setup_tests(
            connector_id, trust_certificates, trust_fingerprints
        )

        warnings: list[str] = []
        failures: list[str] = []
        for test in results:
            logger.info(
                "Setup test result",
                extra={
                    "connector_id": connector_id,
                    "title": test.title,
                    "status": test.status,
                    "test_message": test.message,
                },
            )
            if test.status == SETUP_TEST_WARNING:
                warnings.append(f"{test.title}: {test.message}")
            elif test.status not in (SETUP_TEST_PASSED, SETUP_TEST_SKIPPED):
                failures.append(f"{test.title} (status: {test.status}) - {test.message}")

        if failures:
            raise SetupTestsFailedError(failures, warnings)
        return SetupTestOutcome(warnings=warnings)
