"""Status conditions of a FivetranConnector.

Three independent conditions are maintained. At most one condition exists
per type; setting a condition replaces the previous one of that type.
"""

from __future__ import annotations

from datetime import UTC, datetime

from .models import Condition, ConditionStatus, FivetranConnector

# Condition types
CONNECTOR_READY = "ConnectorReady"
SETUP_TEST_READY = "SetupTestReady"
SCHEMA_READY = "SchemaReady"

CONDITION_TYPES = (CONNECTOR_READY, SETUP_TEST_READY, SCHEMA_READY)

# Reasons
REASON_SUCCESS = "ReconciledSuccessfully"
REASON_SUCCESS_WITH_WARNINGS = "ReconciledSuccessfullyWithWarnings"
REASON_FAILED = "ReconciliationFailed"
REASON_SKIPPED = "Skipped"
REASON_DELETION_FAILED = "DeletionFailed"
REASON_FINALIZER_UPDATE_FAILED = "FinalizerUpdateFailed"
REASON_VAULT_CLIENT_INIT_FAILED = "VaultClientInitializationFailed"
REASON_VAULT_RESOLUTION_FAILED = "VaultSecretsResolutionFailed"
REASON_ADOPTION_FAILED = "ExistingConnectorAdoptionFailed"

# Messages
MSG_CONNECTOR_READY = "Connector is ready"
MSG_SETUP_TESTS_PASSED = "Setup tests completed successfully"
MSG_SETUP_TESTS_SKIPPED = "Setup tests skipped"
MSG_SETUP_TESTS_WARNINGS = "Setup tests completed with warnings: {warnings}"
MSG_SCHEMA_READY = "Schema configuration is ready"
MSG_SCHEMA_SKIPPED = "No schema configuration specified"


def get_condition(resource: FivetranConnector, condition_type: str) -> Condition | None:
    for condition in resource.status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(
    resource: FivetranConnector,
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> Condition:
    """Upsert a condition on ``resource`` in place.

    The transition time only moves when the status value changes. Order of
    existing conditions is kept; new types are appended.
    """
    now = now or datetime.now(UTC)
    by_type = {condition.type: condition for condition in resource.status.conditions}

    previous = by_type.get(condition_type)
    transition_time = now
    if previous is not None and previous.status == status:
        transition_time = previous.last_transition_time

    condition = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=transition_time,
        observed_generation=resource.metadata.generation or None,
    )
    by_type[condition_type] = condition
    resource.status.conditions = list(by_type.values())
    return condition


def has_failed_conditions(resource: FivetranConnector) -> bool:
    """True when any condition is False, which forces a full reconcile."""
    return any(c.status == ConditionStatus.FALSE for c in resource.status.conditions)


def setup_tests_message(warnings: list[str]) -> tuple[str, str]:
    """Reason and message for a successful setup test run."""
    if warnings:
        return REASON_SUCCESS_WITH_WARNINGS, MSG_SETUP_TESTS_WARNINGS.format(
            warnings="; ".join(warnings)
        )
    return REASON_SUCCESS, MSG_SETUP_TESTS_PASSED
