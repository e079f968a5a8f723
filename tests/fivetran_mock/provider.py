"""In-memory Fivetran provider.

Keeps connections in a dict, records every call, and lets tests queue
errors or scripted schema responses per method.
"""

from __future__ import annotations

import copy
from typing import Any

from fivetran_operator.fivetran_client import (
    SCHEMA_NOT_FOUND_CODE,
    ConnectionDetails,
    FivetranAPIError,
    SchemaDetails,
    SetupTestResult,
)


def not_found(what: str = "Connection") -> FivetranAPIError:
    return FivetranAPIError(404, f"NotFound_{what}", f"{what} not found")


def schema_not_found() -> FivetranAPIError:
    return FivetranAPIError(404, SCHEMA_NOT_FOUND_CODE, "Schema config not found")


class MockFivetranClient:
    """ConnectorProvider backed by in-memory state.

    Schema updates are applied to ``live_schema`` unless
    ``apply_schema_updates`` is False, which simulates a provider that
    silently ignores part of the requested configuration.
    """

    def __init__(self) -> None:
        self.connections: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.setup_test_results: list[SetupTestResult] = []
        self.live_schema = SchemaDetails()
        self.schema_responses: list[SchemaDetails | Exception] = []
        self.apply_schema_updates = True
        self.closed = False
        self._errors: dict[str, list[Exception]] = {}
        self._next_id = 1

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def add_connection(
        self, connection_id: str, service: str, group_id: str, schema: str = ""
    ) -> None:
        self.connections[connection_id] = {
            "id": connection_id,
            "service": service,
            "group_id": group_id,
            "schema": schema,
            "paused": True,
        }

    def fail_next(self, method: str, error: Exception) -> None:
        """Raise ``error`` from the next call to ``method``."""
        self._errors.setdefault(method, []).append(error)

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, copy.deepcopy(args)))
        pending = self._errors.get(method)
        if pending:
            raise pending.pop(0)

    def _require(self, connection_id: str) -> dict[str, Any]:
        if connection_id not in self.connections:
            raise not_found()
        return self.connections[connection_id]

    # -------------------------------------------------------------------------
    # ConnectorProvider
    # -------------------------------------------------------------------------

    def create_connection(self, payload: dict[str, Any]) -> str:
        self._record("create_connection", payload)
        connection_id = f"conn_{self._next_id}"
        self._next_id += 1
        config = payload.get("config") or {}
        self.connections[connection_id] = {
            "id": connection_id,
            "service": payload["service"],
            "group_id": payload["group_id"],
            "schema": config.get("schema_prefix") or config.get("schema", ""),
            "paused": payload.get("paused", False),
        }
        return connection_id

    def get_connection(self, connection_id: str) -> ConnectionDetails:
        self._record("get_connection", connection_id)
        return ConnectionDetails.model_validate(self._require(connection_id))

    def update_connection(self, connection_id: str, payload: dict[str, Any]) -> None:
        self._record("update_connection", connection_id, payload)
        connection = self._require(connection_id)
        if "paused" in payload:
            connection["paused"] = payload["paused"]

    def delete_connection(self, connection_id: str) -> None:
        self._record("delete_connection", connection_id)
        self._require(connection_id)
        del self.connections[connection_id]

    def run_setup_tests(
        self, connection_id: str, trust_certificates: bool, trust_fingerprints: bool
    ) -> list[SetupTestResult]:
        self._record("run_setup_tests", connection_id, trust_certificates, trust_fingerprints)
        return list(self.setup_test_results)

    def get_schema_details(self, connection_id: str) -> SchemaDetails:
        self._record("get_schema_details", connection_id)
        if self.schema_responses:
            response = self.schema_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return self.live_schema.model_copy(deep=True)

    def update_schema(self, connection_id: str, payload: dict[str, Any]) -> None:
        self._record("update_schema", connection_id, payload)
        if not self.apply_schema_updates:
            return
        self.live_schema = SchemaDetails.model_validate(
            {
                "schema_change_handling": payload.get(
                    "schema_change_handling", self.live_schema.schema_change_handling
                ),
                "schemas": payload.get("schemas", {}),
            }
        )

    def reload_schema(self, connection_id: str, exclude_mode: str) -> None:
        self._record("reload_schema", connection_id, exclude_mode)

    def close(self) -> None:
        self.closed = True
