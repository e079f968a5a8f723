"""Schema drift repair with a single bounded retry.

One pass runs: fetch (reload when no schema exists yet), apply, verify. When
verification finds a mismatch, exactly one recovery cycle follows: reload,
apply, verify. A second mismatch is terminal.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .fivetran_client import SCHEMA_NOT_FOUND_CODE, ConnectorProvider, FivetranAPIError
from .models import SchemaChangeHandling, SchemaConfig
from .schema_comparison import SchemaMismatchReport, compare_schema

logger = logging.getLogger(__name__)

EXCLUDE_MODE_EXCLUDE = "EXCLUDE"
EXCLUDE_MODE_PRESERVE = "PRESERVE"


class SchemaMismatchAfterRetryError(Exception):
    """The live schema still differs from the declared one after the retry."""

    def __init__(self, report: SchemaMismatchReport) -> None:
        self.report = report
        super().__init__(
            f"mismatches: {report.render()} - schema still mismatches CR after retry; "
            "possible schema config issue"
        )


def reload_exclude_mode(schema: SchemaConfig) -> str:
    """BLOCK_ALL keeps newly discovered objects excluded, anything else preserves."""
    if schema.schema_change_handling == SchemaChangeHandling.BLOCK_ALL:
        return EXCLUDE_MODE_EXCLUDE
    return EXCLUDE_MODE_PRESERVE


class SchemaReconciler:
    """Applies a declared schema to one connection and verifies it."""

    def __init__(self, provider: ConnectorProvider) -> None:
        self._provider = provider

    def reconcile(
        self,
        connector_id: str,
        schema: SchemaConfig,
        on_applied: Callable[[], None] | None = None,
    ) -> None:
        """Bring the live schema of ``connector_id`` in line with ``schema``.

        Args:
            connector_id: Fivetran connection ID.
            schema: Declared schema configuration.
            on_applied: Called after every successful apply, used to persist
                the schema fingerprint.

        Raises:
            FivetranAPIError: On any provider failure.
            SchemaMismatchAfterRetryError: If the retry did not fix the drift.
            ValueError: If the declared schema carries empty names.
        """
        log_extra = {"connector_id": connector_id}
        logger.info("Reconciling schema", extra=log_extra)

        try:
            self._provider.get_schema_details(connector_id)
        except FivetranAPIError as e:
            if e.code != SCHEMA_NOT_FOUND_CODE:
                raise
            self._reload(connector_id, schema)
            logger.info("Schema created successfully after reload", extra=log_extra)

        self._apply(connector_id, schema, on_applied)

        matches, report = self._verify(connector_id, schema)
        if matches:
            logger.info("Schema configuration applied successfully", extra=log_extra)
            return

        logger.info(
            "Schema configuration doesn't match the source, retrying once more",
            extra={**log_extra, "mismatches": report.render()},
        )
        self._reload(connector_id, schema)
        self._apply(connector_id, schema, on_applied)

        matches, report = self._verify(connector_id, schema)
        if not matches:
            raise SchemaMismatchAfterRetryError(report)

        logger.info("Schema configuration applied successfully after retry", extra=log_extra)

    def _reload(self, connector_id: str, schema: SchemaConfig) -> None:
        exclude_mode = reload_exclude_mode(schema)
        logger.info(
            "Reloading schema",
            extra={"connector_id": connector_id, "exclude_mode": exclude_mode},
        )
        self._provider.reload_schema(connector_id, exclude_mode)

    def _apply(
        self,
        connector_id: str,
        schema: SchemaConfig,
        on_applied: Callable[[], None] | None,
    ) -> None:
        logger.info("Applying schema configuration", extra={"connector_id": connector_id})
        self._provider.update_schema(connector_id, schema.to_api_payload())
        if on_applied is not None:
            on_applied()

    def _verify(self, connector_id: str, schema: SchemaConfig) -> tuple[bool, SchemaMismatchReport]:
        live = self._provider.get_schema_details(connector_id)
        return compare_schema(live, schema)
