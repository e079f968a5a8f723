"""Builders for FivetranConnector test resources."""

from __future__ import annotations

from typing import Any

from fivetran_operator.models import FivetranConnector

DEFAULT_NAMESPACE = "fivetran-operator"
DEFAULT_SERVICE = "postgres"
DEFAULT_GROUP_ID = "group_1"


def connector_spec(**overrides: Any) -> dict[str, Any]:
    """A minimal valid ``spec.connector`` document."""
    connector: dict[str, Any] = {
        "group_id": DEFAULT_GROUP_ID,
        "service": DEFAULT_SERVICE,
        "config": {
            "host": "db.example.com",
            "port": 5432,
            "user": "fivetran",
            "password": "vault:secret/data/postgres#password",
            "schema_prefix": "postgres_prod",
        },
        "run_setup_tests": False,
    }
    connector.update(overrides)
    return connector


def schema_spec() -> dict[str, Any]:
    """A ``spec.connectorSchemas`` document with one schema and one table."""
    return {
        "schema_change_handling": "BLOCK_ALL",
        "schemas": {
            "public": {
                "enabled": True,
                "tables": {
                    "users": {
                        "enabled": True,
                        "sync_mode": "SOFT_DELETE",
                        "columns": {"email": {"enabled": True, "hashed": True}},
                    }
                },
            }
        },
    }


def make_resource(
    name: str = "postgres-prod",
    namespace: str = DEFAULT_NAMESPACE,
    *,
    connector: dict[str, Any] | None = None,
    schemas: dict[str, Any] | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    finalizers: list[str] | None = None,
    status: dict[str, Any] | None = None,
    generation: int = 1,
    deletion_timestamp: str | None = None,
) -> FivetranConnector:
    spec: dict[str, Any] = {"connector": connector or connector_spec()}
    if schemas is not None:
        spec["connectorSchemas"] = schemas

    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "generation": generation,
        "labels": labels or {},
        "annotations": annotations or {},
        "finalizers": finalizers or [],
    }
    if deletion_timestamp:
        metadata["deletionTimestamp"] = deletion_timestamp

    document: dict[str, Any] = {
        "apiVersion": "operator.dataverse.redhat.com/v1alpha1",
        "kind": "FivetranConnector",
        "metadata": metadata,
        "spec": spec,
    }
    if status is not None:
        document["status"] = status
    return FivetranConnector.model_validate(document)
