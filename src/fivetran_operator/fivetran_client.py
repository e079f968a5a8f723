"""Fivetran REST API client.

A thin synchronous client over httpx covering the connection and schema
endpoints the reconciler needs. Every failed call raises FivetranAPIError
carrying the HTTP status and the provider's error code and message.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import DEFAULT_FIVETRAN_BASE_URL, DEFAULT_REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

USER_AGENT = "fivetran-operator"
ACCEPT_HEADER = "application/json;version=2"

# Distinguished provider code returned when a connection has no schema yet
SCHEMA_NOT_FOUND_CODE = "NotFound_SchemaConfig"


class FivetranAPIError(Exception):
    """A failed Fivetran API call.

    ``status_code`` is 0 when no HTTP response was received.
    """

    def __init__(self, status_code: int, code: str = "", message: str = "") -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"fivetran api error (status {status_code}): {code} - {message}")

    @property
    def is_retryable(self) -> bool:
        """429 and 5xx are retryable, other 4xx are not.

        Anything outside the 4xx range (including transport failures) is
        treated as retryable.
        """
        if self.status_code == 429:
            return True
        return self.status_code < 400 or self.status_code >= 500

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


# =============================================================================
# Response models
# =============================================================================


class ConnectionDetails(BaseModel):
    """The subset of a connection the operator reads back."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    service: str = ""
    group_id: str = ""
    schema_name: str = Field("", alias="schema")
    paused: bool | None = None


class SetupTestResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = ""
    status: str = ""
    message: str = ""
    details: Any = None


class LiveColumn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool | None = None
    hashed: bool | None = None
    is_primary_key: bool | None = None


class LiveTable(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool | None = None
    sync_mode: str | None = None
    columns: dict[str, LiveColumn] = Field(default_factory=dict)


class LiveSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name_in_destination: str | None = None
    enabled: bool | None = None
    tables: dict[str, LiveTable] = Field(default_factory=dict)


class SchemaDetails(BaseModel):
    """Live schema configuration of a connection."""

    model_config = ConfigDict(extra="ignore")

    schema_change_handling: str = ""
    schemas: dict[str, LiveSchema] = Field(default_factory=dict)


# =============================================================================
# Provider protocol
# =============================================================================


class ConnectorProvider(Protocol):
    """Operations the reconciler needs from the connector provider."""

    def create_connection(self, payload: dict[str, Any]) -> str: ...

    def get_connection(self, connection_id: str) -> ConnectionDetails: ...

    def update_connection(self, connection_id: str, payload: dict[str, Any]) -> None: ...

    def delete_connection(self, connection_id: str) -> None: ...

    def run_setup_tests(
        self, connection_id: str, trust_certificates: bool, trust_fingerprints: bool
    ) -> list[SetupTestResult]: ...

    def get_schema_details(self, connection_id: str) -> SchemaDetails: ...

    def update_schema(self, connection_id: str, payload: dict[str, Any]) -> None: ...

    def reload_schema(self, connection_id: str, exclude_mode: str) -> None: ...


# =============================================================================
# Client
# =============================================================================


class FivetranClient:
    """HTTP implementation of ConnectorProvider.

    The underlying httpx.Client is safe to share between threads.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = DEFAULT_FIVETRAN_BASE_URL,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_key or not api_secret:
            raise ValueError("FIVETRAN_API_KEY and FIVETRAN_API_SECRET are required")
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=httpx.BasicAuth(api_key, api_secret),
            headers={"Accept": ACCEPT_HEADER, "User-Agent": USER_AGENT},
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> FivetranClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def create_connection(self, payload: dict[str, Any]) -> str:
        data = self._request("POST", "/connections", json=payload)
        connection_id = data.get("id")
        if not connection_id:
            raise FivetranAPIError(0, "InvalidResponse", "create response carries no id")
        return connection_id

    def get_connection(self, connection_id: str) -> ConnectionDetails:
        data = self._request("GET", f"/connections/{connection_id}")
        return self._parse(ConnectionDetails, data)

    def update_connection(self, connection_id: str, payload: dict[str, Any]) -> None:
        self._request("PATCH", f"/connections/{connection_id}", json=payload)

    def delete_connection(self, connection_id: str) -> None:
        self._request("DELETE", f"/connections/{connection_id}")

    def run_setup_tests(
        self, connection_id: str, trust_certificates: bool, trust_fingerprints: bool
    ) -> list[SetupTestResult]:
        data = self._request(
            "POST",
            f"/connections/{connection_id}/test",
            json={
                "trust_certificates": trust_certificates,
                "trust_fingerprints": trust_fingerprints,
            },
        )
        return [self._parse(SetupTestResult, item) for item in data.get("setup_tests") or []]

    # -------------------------------------------------------------------------
    # Schemas
    # -------------------------------------------------------------------------

    def get_schema_details(self, connection_id: str) -> SchemaDetails:
        data = self._request("GET", f"/connections/{connection_id}/schemas")
        return self._parse(SchemaDetails, data)

    def update_schema(self, connection_id: str, payload: dict[str, Any]) -> None:
        self._request("PATCH", f"/connections/{connection_id}/schemas", json=payload)

    def reload_schema(self, connection_id: str, exclude_mode: str) -> None:
        self._request(
            "POST",
            f"/connections/{connection_id}/schemas/reload",
            json={"exclude_mode": exclude_mode},
        )

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send one request and return the ``data`` envelope of the response.

        Raises:
            FivetranAPIError: On transport failures and non-2xx responses.
        """
        try:
            response = self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.warning(
                "Fivetran request failed",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise FivetranAPIError(0, type(e).__name__, str(e)) from e

        body = self._json_body(response)

        if response.is_error:
            error = FivetranAPIError(
                response.status_code,
                str(body.get("code") or ""),
                str(body.get("message") or response.reason_phrase),
            )
            logger.debug(
                "Fivetran API error",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": error.status_code,
                    "code": error.code,
                },
            )
            raise error

        return body.get("data") or {}

    @staticmethod
    def _json_body(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _parse(model: type[BaseModel], data: dict[str, Any]) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise FivetranAPIError(0, "InvalidResponse", str(e)) from e
