"""Reconciliation of one FivetranConnector against Fivetran.

A pass runs these steps in order:
1. Load the resource; a missing resource is a no-op
2. Deletion: delete the remote connection and release the finalizer
3. Ensure the finalizer is present
4. Decide from the stored fingerprints whether anything needs doing
5. Resolve secret references in config and auth
6. Adopt, create or update the connection
7. Run setup tests
8. Apply and verify the schema
9. Follow-up update of a freshly created connection
10. Remove consumed markers

Each failure is recorded as a condition and classified as either a requeue
after a fixed delay or a terminal outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import (
    ANNOTATION_ADOPT_CONNECTOR_ID,
    ANNOTATION_CONNECTOR_HASH,
    ANNOTATION_CONNECTOR_ID,
    ANNOTATION_SCHEMA_HASH,
    CONNECTOR_URL_TEMPLATE,
    DEFAULT_REQUEUE_AFTER_SECONDS,
    FINALIZER,
    LABEL_FORCE_RECONCILE,
)
from .fingerprint import NO_SCHEMA_FINGERPRINT, changed, config_fingerprint, schema_fingerprint
from .fivetran_client import ConnectorProvider, FivetranAPIError
from .lifecycle import (
    ConnectorLifecycle,
    ConnectorValidationError,
    IdentitySource,
    KnownIdentity,
    RecoveringIdentity,
    SetupTestsFailedError,
    identity_of,
)
from .models import ConditionStatus, FivetranConnector
from .resource_store import ResourceConflictError, ResourceStore, ResourceStoreError
from .schema_reconciler import SchemaMismatchAfterRetryError, SchemaReconciler
from .secrets import (
    SecretResolutionError,
    SecretResolver,
    SecretStore,
    SecretStoreAuthenticationError,
)
from .status import (
    CONNECTOR_READY,
    MSG_CONNECTOR_READY,
    MSG_SCHEMA_READY,
    MSG_SCHEMA_SKIPPED,
    MSG_SETUP_TESTS_SKIPPED,
    REASON_ADOPTION_FAILED,
    REASON_DELETION_FAILED,
    REASON_FAILED,
    REASON_FINALIZER_UPDATE_FAILED,
    REASON_SKIPPED,
    REASON_SUCCESS,
    REASON_VAULT_CLIENT_INIT_FAILED,
    REASON_VAULT_RESOLUTION_FAILED,
    SCHEMA_READY,
    SETUP_TEST_READY,
    has_failed_conditions,
    set_condition,
    setup_tests_message,
)

logger = logging.getLogger(__name__)


class OutcomeAction(str, Enum):
    """What the caller should do after a pass."""

    NOOP = "noop"  # Nothing needed doing
    REQUEUE = "requeue"  # Transient failure, try again after requeue_after
    DONE = "done"  # Finished, successfully or terminally


@dataclass
class ReconcileOutcome:
    """Result of a single reconciliation pass."""

    key: str
    action: OutcomeAction = OutcomeAction.NOOP
    requeue_after: float | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    connector_id: str | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class _Stage:
    """Condition that records a failure of the step currently running."""

    condition_type: str
    reason: str


@dataclass(frozen=True)
class ReconciliationNeeds:
    connector: bool
    schema: bool

    @property
    def any(self) -> bool:
        return self.connector or self.schema


def determine_needs(resource: FivetranConnector) -> ReconciliationNeeds:
    """Decide what to reconcile from markers, conditions and fingerprints.

    The force label or any failed condition reconciles everything. A
    connection whose identity is not confirmed always needs the connector
    step, and its declared schema as well.
    """
    has_schema = resource.spec.has_schema_config
    if LABEL_FORCE_RECONCILE in resource.metadata.labels or has_failed_conditions(resource):
        return ReconciliationNeeds(connector=True, schema=has_schema)

    annotations = resource.metadata.annotations
    known = isinstance(identity_of(resource), KnownIdentity)

    connector_needed = not known or changed(
        config_fingerprint(resource.spec), annotations.get(ANNOTATION_CONNECTOR_HASH)
    )
    schema_needed = has_schema and (
        not known
        or changed(schema_fingerprint(resource.spec), annotations.get(ANNOTATION_SCHEMA_HASH))
    )
    return ReconciliationNeeds(connector=connector_needed, schema=schema_needed)


class Reconciler:
    """Drives one FivetranConnector towards its declared state.

    Passes for different resources may run concurrently. Passes for the same
    resource must not; the caller serializes them.
    """

    def __init__(
        self,
        store: ResourceStore,
        provider: ConnectorProvider,
        secret_store: SecretStore,
        requeue_after_seconds: float = DEFAULT_REQUEUE_AFTER_SECONDS,
    ) -> None:
        self._store = store
        self._provider = provider
        self._secret_store = secret_store
        self._lifecycle = ConnectorLifecycle(provider)
        self._schemas = SchemaReconciler(provider)
        self._requeue_after = requeue_after_seconds

    def reconcile(self, key: str) -> ReconcileOutcome:
        """Run one pass for the resource ``namespace/name``."""
        outcome = ReconcileOutcome(key=key)
        log_extra: dict[str, Any] = {"resource": key}
        logger.info("Starting reconciliation", extra=log_extra)

        try:
            resource = self._store.get(key)
        except ResourceStoreError as e:
            logger.error("Failed to load resource", extra={**log_extra, "error": str(e)})
            return self._finish(outcome, self._requeue(outcome, e))

        if resource is None:
            logger.info("Resource not found, nothing to do", extra=log_extra)
            return self._finish(outcome, OutcomeAction.NOOP)

        stage = _Stage(CONNECTOR_READY, REASON_FAILED)
        try:
            if resource.is_being_deleted:
                stage = _Stage(CONNECTOR_READY, REASON_DELETION_FAILED)
                return self._finish(outcome, self._handle_deletion(resource))

            stage = _Stage(CONNECTOR_READY, REASON_FINALIZER_UPDATE_FAILED)
            self._ensure_finalizer(resource)

            stage = _Stage(CONNECTOR_READY, REASON_FAILED)
            needs = determine_needs(resource)
            if not needs.any:
                logger.info(
                    "No changes detected and no failures, skipping reconcile", extra=log_extra
                )
                return self._finish(outcome, OutcomeAction.NOOP)

            stage = _Stage(CONNECTOR_READY, REASON_VAULT_RESOLUTION_FAILED)
            config, auth = self._resolve_secrets(resource)

            connector_id = resource.status.connector_id
            outcome.connector_id = connector_id
            created = False
            if needs.connector:
                identity = identity_of(resource)
                if isinstance(identity, RecoveringIdentity):
                    stage = _Stage(CONNECTOR_READY, REASON_ADOPTION_FAILED)
                    self._lifecycle.adopt(
                        identity.connector_id, resource.spec.connector, config, identity.source
                    )
                    self._record_identity(resource, identity.connector_id)
                    identity = KnownIdentity(identity.connector_id)

                stage = _Stage(CONNECTOR_READY, REASON_FAILED)
                result = self._lifecycle.apply(identity, resource.spec.connector, config, auth)
                connector_id = result.connector_id
                created = result.created
                outcome.connector_id = connector_id
                self._record_connector_applied(resource, connector_id)

                stage = _Stage(SETUP_TEST_READY, REASON_FAILED)
                self._run_setup_tests(resource, connector_id)

            stage = _Stage(SCHEMA_READY, REASON_FAILED)
            if needs.schema:
                assert connector_id is not None
                self._reconcile_schema(resource, connector_id)
            elif not resource.spec.has_schema_config:
                set_condition(
                    resource, SCHEMA_READY, ConditionStatus.TRUE, REASON_SKIPPED, MSG_SCHEMA_SKIPPED
                )
                self._save_status(resource)

            stage = _Stage(CONNECTOR_READY, REASON_FAILED)
            if created:
                # schedule_type and the declared paused flag cannot be set on create
                logger.info(
                    "Updating connector again to set schedule type and pause state",
                    extra={**log_extra, "connector_id": connector_id},
                )
                self._lifecycle.update(connector_id, resource.spec.connector, config, auth)

            self._cleanup_markers(resource)

        except SetupTestsFailedError as e:
            return self._finish(outcome, self._fail_setup_tests(resource, outcome, e))
        except ConnectorValidationError as e:
            logger.error("Connector validation failed", extra={**log_extra, "error": str(e)})
            return self._finish(outcome, self._fail(resource, outcome, stage, e, requeue=False))
        except SecretResolutionError as e:
            if isinstance(e.__cause__, SecretStoreAuthenticationError):
                stage = _Stage(CONNECTOR_READY, REASON_VAULT_CLIENT_INIT_FAILED)
            logger.error(
                "Secret resolution failed",
                extra={**log_extra, "error": str(e), "retryable": e.retryable},
            )
            return self._finish(outcome, self._fail(resource, outcome, stage, e, e.retryable))
        except FivetranAPIError as e:
            logger.error(
                "Fivetran API error",
                extra={**log_extra, "error": str(e), "status_code": e.status_code},
            )
            return self._finish(outcome, self._fail(resource, outcome, stage, e, e.is_retryable))
        except SchemaMismatchAfterRetryError as e:
            logger.error("Schema mismatch after retry", extra={**log_extra, "error": str(e)})
            return self._finish(outcome, self._fail(resource, outcome, stage, e, requeue=False))
        except ResourceStoreError as e:
            logger.warning("Resource store error", extra={**log_extra, "error": str(e)})
            return self._finish(outcome, self._fail(resource, outcome, stage, e, requeue=True))
        except Exception as e:
            logger.exception("Unexpected error during reconciliation", extra=log_extra)
            return self._finish(outcome, self._fail(resource, outcome, stage, e, requeue=True))

        logger.info("Reconciliation completed", extra={**log_extra, "connector_id": connector_id})
        return self._finish(outcome, OutcomeAction.DONE)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _handle_deletion(self, resource: FivetranConnector) -> OutcomeAction:
        if FINALIZER not in resource.metadata.finalizers:
            return OutcomeAction.NOOP

        identity = identity_of(resource)
        connector_id: str | None = None
        match identity:
            case KnownIdentity(connector_id=known_id):
                connector_id = known_id
            case RecoveringIdentity(connector_id=backup_id, source=IdentitySource.BACKUP):
                connector_id = backup_id

        logger.info(
            "Handling deletion",
            extra={"resource": resource.key, "connector_id": connector_id},
        )
        if connector_id:
            self._lifecycle.delete(connector_id)

        resource.metadata.finalizers = [
            f for f in resource.metadata.finalizers if f != FINALIZER
        ]
        self._save(resource)
        return OutcomeAction.DONE

    def _ensure_finalizer(self, resource: FivetranConnector) -> None:
        if FINALIZER in resource.metadata.finalizers:
            return
        logger.info("Adding finalizer", extra={"resource": resource.key, "finalizer": FINALIZER})
        resource.metadata.finalizers.append(FINALIZER)
        self._save(resource)

    def _resolve_secrets(
        self, resource: FivetranConnector
    ) -> tuple[dict[str, Any], dict[str, Any] | None]:
        logger.info("Resolving vault secrets", extra={"resource": resource.key})
        # One resolver per pass shares its cache between config and auth
        resolver = SecretResolver(self._secret_store)
        connector = resource.spec.connector
        config = resolver.resolve(connector.config, "config")
        auth = resolver.resolve(connector.auth, "auth") if connector.auth is not None else None
        return config, auth

    def _record_identity(self, resource: FivetranConnector, connector_id: str) -> None:
        """Make ``connector_id`` the authoritative identity, with its backup copy."""
        resource.status.connector_id = connector_id
        resource.status.connector_url = CONNECTOR_URL_TEMPLATE.format(connector_id=connector_id)
        self._save_status(resource)
        resource.metadata.annotations[ANNOTATION_CONNECTOR_ID] = connector_id
        self._save(resource)

    def _record_connector_applied(self, resource: FivetranConnector, connector_id: str) -> None:
        resource.status.connector_id = connector_id
        resource.status.connector_url = CONNECTOR_URL_TEMPLATE.format(connector_id=connector_id)
        set_condition(
            resource, CONNECTOR_READY, ConditionStatus.TRUE, REASON_SUCCESS, MSG_CONNECTOR_READY
        )
        self._save_status(resource)

        annotations = resource.metadata.annotations
        annotations[ANNOTATION_CONNECTOR_ID] = connector_id
        annotations[ANNOTATION_CONNECTOR_HASH] = config_fingerprint(resource.spec)
        self._save(resource)
        logger.info(
            "Connector reconciled successfully",
            extra={"resource": resource.key, "connector_id": connector_id},
        )

    def _run_setup_tests(self, resource: FivetranConnector, connector_id: str) -> None:
        result = self._lifecycle.run_setup_tests(connector_id, resource.spec.connector)
        if result.skipped:
            reason, message = REASON_SKIPPED, MSG_SETUP_TESTS_SKIPPED
        else:
            reason, message = setup_tests_message(result.warnings)
            if result.warnings:
                logger.info(
                    "Setup tests completed with warnings",
                    extra={
                        "resource": resource.key,
                        "connector_id": connector_id,
                        "warnings": result.warnings,
                    },
                )
        set_condition(resource, SETUP_TEST_READY, ConditionStatus.TRUE, reason, message)
        self._save_status(resource)

    def _reconcile_schema(self, resource: FivetranConnector, connector_id: str) -> None:
        schema = resource.spec.connector_schemas
        assert schema is not None

        def persist_schema_fingerprint() -> None:
            resource.metadata.annotations[ANNOTATION_SCHEMA_HASH] = schema_fingerprint(
                resource.spec
            )
            self._save(resource)

        self._schemas.reconcile(connector_id, schema, on_applied=persist_schema_fingerprint)
        set_condition(
            resource, SCHEMA_READY, ConditionStatus.TRUE, REASON_SUCCESS, MSG_SCHEMA_READY
        )
        self._save_status(resource)

    def _cleanup_markers(self, resource: FivetranConnector) -> None:
        """Drop the force label and adoption request, record an absent schema."""
        meta = resource.metadata
        dirty = False
        if LABEL_FORCE_RECONCILE in meta.labels:
            del meta.labels[LABEL_FORCE_RECONCILE]
            dirty = True
        if ANNOTATION_ADOPT_CONNECTOR_ID in meta.annotations:
            del meta.annotations[ANNOTATION_ADOPT_CONNECTOR_ID]
            dirty = True
        if (
            not resource.spec.has_schema_config
            and meta.annotations.get(ANNOTATION_SCHEMA_HASH) != NO_SCHEMA_FINGERPRINT
        ):
            meta.annotations[ANNOTATION_SCHEMA_HASH] = NO_SCHEMA_FINGERPRINT
            dirty = True
        if dirty:
            logger.info("Cleaning up annotations and labels", extra={"resource": resource.key})
            self._save(resource)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _save(self, resource: FivetranConnector) -> None:
        """Write metadata and spec, keeping the local status."""
        saved = self._store.update(resource)
        resource.metadata = saved.metadata

    def _save_status(self, resource: FivetranConnector) -> None:
        saved = self._store.update_status(resource)
        resource.metadata.resource_version = saved.metadata.resource_version

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    def _fail(
        self,
        resource: FivetranConnector,
        outcome: ReconcileOutcome,
        stage: _Stage,
        error: Exception,
        requeue: bool,
    ) -> OutcomeAction:
        """Record ``error`` on the stage's condition and pick the outcome."""
        outcome.error = error
        if not self._write_condition(
            resource, stage.condition_type, ConditionStatus.FALSE, stage.reason, str(error)
        ):
            return self._requeue(outcome, error)
        if requeue:
            return self._requeue(outcome, error)
        return OutcomeAction.DONE

    def _fail_setup_tests(
        self,
        resource: FivetranConnector,
        outcome: ReconcileOutcome,
        error: SetupTestsFailedError,
    ) -> OutcomeAction:
        """The connector itself is fine, only the setup tests failed."""
        outcome.error = error
        logger.error(
            "Setup tests failed",
            extra={"resource": resource.key, "failures": error.failures},
        )
        set_condition(
            resource, CONNECTOR_READY, ConditionStatus.TRUE, REASON_SUCCESS, MSG_CONNECTOR_READY
        )
        if not self._write_condition(
            resource, SETUP_TEST_READY, ConditionStatus.FALSE, REASON_FAILED, str(error)
        ):
            return self._requeue(outcome, error)
        return OutcomeAction.DONE

    def _write_condition(
        self,
        resource: FivetranConnector,
        condition_type: str,
        status: ConditionStatus,
        reason: str,
        message: str,
    ) -> bool:
        """Persist one condition, re-reading the resource once on conflict."""
        logger.info(
            "Setting condition",
            extra={
                "resource": resource.key,
                "condition_type": condition_type,
                "status": status.value,
                "reason": reason,
            },
        )
        set_condition(resource, condition_type, status, reason, message)
        try:
            self._save_status(resource)
            return True
        except ResourceConflictError:
            pass
        except ResourceStoreError as e:
            logger.error(
                "Failed to persist condition",
                extra={"resource": resource.key, "error": str(e)},
            )
            return False

        try:
            fresh = self._store.get(resource.key)
            if fresh is None:
                return False
            fresh.status.conditions = resource.status.conditions
            if resource.status.connector_id and not fresh.status.connector_id:
                fresh.status.connector_id = resource.status.connector_id
                fresh.status.connector_url = resource.status.connector_url
            self._save_status(fresh)
        except ResourceStoreError as e:
            logger.error(
                "Failed to persist condition",
                extra={"resource": resource.key, "error": str(e)},
            )
            return False
        return True

    def _requeue(self, outcome: ReconcileOutcome, error: Exception) -> OutcomeAction:
        outcome.error = error
        outcome.requeue_after = self._requeue_after
        return OutcomeAction.REQUEUE

    def _finish(self, outcome: ReconcileOutcome, action: OutcomeAction) -> ReconcileOutcome:
        outcome.action = action
        outcome.end_time = datetime.now(UTC)
        self._log_outcome(outcome)
        return outcome

    def _log_outcome(self, outcome: ReconcileOutcome) -> None:
        extra: dict[str, Any] = {
            "resource": outcome.key,
            "action": outcome.action.value,
            "duration_seconds": outcome.duration_seconds,
        }
        if outcome.connector_id:
            extra["connector_id"] = outcome.connector_id
        if outcome.requeue_after is not None:
            extra["requeue_after"] = outcome.requeue_after
        if outcome.error is not None:
            extra["error"] = str(outcome.error)
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
