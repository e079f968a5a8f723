"""Pydantic models for the FivetranConnector custom resource.

These models provide:
1. Type-safe parsing of the resource as the API server serializes it
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to Fivetran REST API payloads
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import API_GROUP_VERSION, KIND

# =============================================================================
# Connector
# =============================================================================

DAILY_SYNC_FREQUENCY_MINUTES = 1440

VALID_SYNC_FREQUENCIES = frozenset({1, 5, 15, 30, 60, 120, 180, 360, 480, 720, 1440})
VALID_SCHEDULE_TYPES = frozenset({"auto", "manual"})
VALID_DATA_DELAY_SENSITIVITIES = frozenset({"LOW", "NORMAL", "HIGH", "CUSTOM", "SYNC_FREQUENCY"})
VALID_NETWORKING_METHODS = frozenset({"Directly", "PrivateLink", "SshTunnel", "ProxyAgent"})

DAILY_SYNC_TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):00$"


class ConnectorConfig(BaseModel):
    """Desired state of the Fivetran connection (``spec.connector``)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    # Immutable identity attributes, enforced by the CRD
    group_id: Annotated[str, Field(min_length=1)]
    service: Annotated[str, Field(min_length=1)]

    # Opaque documents, may contain vault:<path>#<key> references
    config: dict[str, Any]
    auth: dict[str, Any] | None = None

    # Sync settings
    daily_sync_time: Annotated[str | None, Field(pattern=DAILY_SYNC_TIME_PATTERN)] = None
    sync_frequency: int | None = None
    schedule_type: str | None = None

    # State settings
    paused: bool = False
    run_setup_tests: bool | None = None
    pause_after_trial: bool | None = None

    # Trust settings
    trust_certificates: bool | None = None
    trust_fingerprints: bool | None = None

    # Data delay sensitivity
    data_delay_sensitivity: str | None = None
    data_delay_threshold: int | None = None

    # Networking
    networking_method: str | None = None
    proxy_agent_id: str | None = None
    private_link_id: str | None = None
    hybrid_deployment_agent_id: str | None = None

    @field_validator("sync_frequency")
    @classmethod
    def validate_sync_frequency(cls, v: int | None) -> int | None:
        if v is not None and v not in VALID_SYNC_FREQUENCIES:
            raise ValueError(f"sync_frequency must be one of {sorted(VALID_SYNC_FREQUENCIES)}")
        return v

    @field_validator("schedule_type")
    @classmethod
    def validate_schedule_type(cls, v: str | None) -> str | None:
        if v and v not in VALID_SCHEDULE_TYPES:
            raise ValueError(f"schedule_type must be one of {sorted(VALID_SCHEDULE_TYPES)}")
        return v

    @field_validator("data_delay_sensitivity")
    @classmethod
    def validate_data_delay_sensitivity(cls, v: str | None) -> str | None:
        if v and v not in VALID_DATA_DELAY_SENSITIVITIES:
            raise ValueError(
                f"data_delay_sensitivity must be one of {sorted(VALID_DATA_DELAY_SENSITIVITIES)}"
            )
        return v

    @field_validator("networking_method")
    @classmethod
    def validate_networking_method(cls, v: str | None) -> str | None:
        if v and v not in VALID_NETWORKING_METHODS:
            raise ValueError(
                f"networking_method must be one of {sorted(VALID_NETWORKING_METHODS)}"
            )
        return v

    @model_validator(mode="after")
    def validate_daily_sync_time(self) -> ConnectorConfig:
        if self.daily_sync_time and self.sync_frequency != DAILY_SYNC_FREQUENCY_MINUTES:
            raise ValueError(
                "daily_sync_time can only be specified when sync_frequency is "
                f"{DAILY_SYNC_FREQUENCY_MINUTES}"
            )
        return self

    @property
    def setup_tests_enabled(self) -> bool:
        """Setup tests run unless explicitly disabled."""
        return self.run_setup_tests is None or self.run_setup_tests

    def to_create_payload(
        self, config: dict[str, Any] | None, auth: dict[str, Any] | None
    ) -> dict[str, Any]:
        """Build a ``POST /connections`` body from resolved config and auth.

        ``schedule_type`` is not accepted at creation time, so it is left out
        and applied by a follow-up update.
        """
        payload: dict[str, Any] = {"service": self.service, "group_id": self.group_id}
        payload.update(self._sendable_fields(config, auth))
        return payload

    def to_update_payload(
        self, config: dict[str, Any] | None, auth: dict[str, Any] | None
    ) -> dict[str, Any]:
        """Build a ``PATCH /connections/{id}`` body that sets every sendable field."""
        payload = self._sendable_fields(config, auth)
        if self.schedule_type:
            payload["schedule_type"] = self.schedule_type
        return payload

    def _sendable_fields(
        self, config: dict[str, Any] | None, auth: dict[str, Any] | None
    ) -> dict[str, Any]:
        # Setup tests are driven by the operator, never by create/update
        payload: dict[str, Any] = {"paused": self.paused, "run_setup_tests": False}

        if self.sync_frequency:
            payload["sync_frequency"] = self.sync_frequency
        if self.daily_sync_time:
            payload["daily_sync_time"] = self.daily_sync_time
        if self.pause_after_trial is not None:
            payload["pause_after_trial"] = self.pause_after_trial
        if config is not None:
            payload["config"] = config
        if auth is not None:
            payload["auth"] = auth
        if self.networking_method:
            payload["networking_method"] = self.networking_method
        if self.proxy_agent_id:
            payload["proxy_agent_id"] = self.proxy_agent_id
        if self.private_link_id:
            payload["private_link_id"] = self.private_link_id
        if self.hybrid_deployment_agent_id:
            payload["hybrid_deployment_agent_id"] = self.hybrid_deployment_agent_id
        if self.data_delay_sensitivity:
            payload["data_delay_sensitivity"] = self.data_delay_sensitivity
        if self.data_delay_threshold:
            payload["data_delay_threshold"] = self.data_delay_threshold

        return payload


# =============================================================================
# Schema
# =============================================================================


class SchemaChangeHandling(str, Enum):
    """How Fivetran treats schemas, tables and columns it discovers later."""

    ALLOW_ALL = "ALLOW_ALL"
    ALLOW_COLUMNS = "ALLOW_COLUMNS"
    BLOCK_ALL = "BLOCK_ALL"


class SyncMode(str, Enum):
    """Table sync modes."""

    SOFT_DELETE = "SOFT_DELETE"
    HISTORY = "HISTORY"
    LIVE = "LIVE"


class MaskingAlgorithm(str, Enum):
    """Column masking algorithms."""

    PLAINTEXT = "PLAINTEXT"
    HASHED = "HASHED"
    ENCRYPTED = "ENCRYPTED"


class ColumnObject(BaseModel):
    """Column settings. Applied to Fivetran but never drift-checked."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, use_enum_values=True)

    enabled: bool = False
    hashed: bool = False
    is_primary_key: bool = False
    masking_algorithm: MaskingAlgorithm | None = None


class TableObject(BaseModel):
    """Table settings within a schema."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, use_enum_values=True)

    enabled: bool = False
    sync_mode: SyncMode | None = None
    columns: dict[str, ColumnObject] = Field(default_factory=dict)


class SchemaObject(BaseModel):
    """Schema settings within a connector."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    enabled: bool = False
    tables: dict[str, TableObject] = Field(default_factory=dict)


class SchemaConfig(BaseModel):
    """Declared schema hierarchy (``spec.connectorSchemas``)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, use_enum_values=True)

    schemas: dict[str, SchemaObject] = Field(default_factory=dict)
    schema_change_handling: SchemaChangeHandling | None = None

    @property
    def has_declarations(self) -> bool:
        """True when there is anything to push to Fivetran."""
        return bool(self.schemas) or bool(self.schema_change_handling)

    def to_api_payload(self) -> dict[str, Any]:
        """Convert to a ``PATCH /connections/{id}/schemas`` body.

        Raises:
            ValueError: If a schema, table or column name is empty.
        """
        payload: dict[str, Any] = {}
        if self.schema_change_handling:
            payload["schema_change_handling"] = self.schema_change_handling

        schemas: dict[str, Any] = {}
        for schema_name, schema in self.schemas.items():
            if not schema_name:
                raise ValueError("schema name cannot be empty")
            tables: dict[str, Any] = {}
            for table_name, table in schema.tables.items():
                if not table_name:
                    raise ValueError(f"table name cannot be empty in schema {schema_name!r}")
                table_payload: dict[str, Any] = {"enabled": table.enabled}
                if table.sync_mode:
                    table_payload["sync_mode"] = table.sync_mode
                columns: dict[str, Any] = {}
                for column_name, column in table.columns.items():
                    if not column_name:
                        raise ValueError(
                            f"column name cannot be empty in table {schema_name}.{table_name}"
                        )
                    column_payload: dict[str, Any] = {
                        "enabled": column.enabled,
                        "hashed": column.hashed,
                        "is_primary_key": column.is_primary_key,
                    }
                    if column.masking_algorithm:
                        column_payload["masking_algorithm"] = column.masking_algorithm
                    columns[column_name] = column_payload
                if columns:
                    table_payload["columns"] = columns
                tables[table_name] = table_payload

            schema_payload: dict[str, Any] = {"enabled": schema.enabled}
            if tables:
                schema_payload["tables"] = tables
            schemas[schema_name] = schema_payload

        if schemas:
            payload["schemas"] = schemas
        return payload


# =============================================================================
# Resource
# =============================================================================


class FivetranConnectorSpec(BaseModel):
    """Desired state of a FivetranConnector."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    connector: ConnectorConfig
    connector_schemas: SchemaConfig | None = Field(None, alias="connectorSchemas")

    @property
    def has_schema_config(self) -> bool:
        return self.connector_schemas is not None and self.connector_schemas.has_declarations


class ConditionStatus(str, Enum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(BaseModel):
    """A typed, timestamped status record."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Annotated[str, Field(min_length=1)]
    status: ConditionStatus
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(alias="lastTransitionTime")
    observed_generation: int | None = Field(None, alias="observedGeneration")


class ConnectorStatus(BaseModel):
    """Observed state written by the operator."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    connector_id: str | None = Field(None, alias="connectorId")
    connector_url: str | None = Field(None, alias="connectorUrl")
    conditions: list[Condition] = Field(default_factory=list)


class ObjectMeta(BaseModel):
    """Kubernetes object metadata.

    Fields the operator does not use (ownerReferences, managedFields, ...) are
    kept as extras so a full write sends them back unchanged.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    uid: str | None = None
    generation: int = 0
    resource_version: str | None = Field(None, alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: str | None = Field(None, alias="deletionTimestamp")


class FivetranConnector(BaseModel):
    """The FivetranConnector custom resource."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field(API_GROUP_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: FivetranConnectorSpec
    status: ConnectorStatus = Field(default_factory=ConnectorStatus)

    @property
    def key(self) -> str:
        """Resource identity as ``namespace/name``."""
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def is_being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def to_manifest(self) -> dict[str, Any]:
        """Serialize the whole object the way the API server expects it."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
