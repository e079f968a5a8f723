"""In-memory secret store and resource store.

MockResourceStore mimics the API server closely enough for the
reconciler: every write bumps resourceVersion, a write based on an older
version is rejected, status and metadata are written separately, and an
object that is being deleted disappears once its last finalizer is removed.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from fivetran_operator.models import FivetranConnector
from fivetran_operator.resource_store import ResourceConflictError, ResourceStoreError
from fivetran_operator.secrets import SecretStoreError


class MockSecretStore:
    """SecretStore over a dict of ``path -> data``.

    A path mapped to None exists without data.
    """

    def __init__(self, secrets: dict[str, dict[str, Any] | None] | None = None) -> None:
        self.secrets: dict[str, dict[str, Any] | None] = secrets or {}
        self.reads: dict[str, int] = {}
        self.error: SecretStoreError | None = None
        self.closed = False

    def read_secret(self, path: str) -> Mapping[str, Any] | None:
        self.reads[path] = self.reads.get(path, 0) + 1
        if self.error is not None:
            raise self.error
        if path not in self.secrets:
            return None
        return copy.deepcopy(self.secrets[path]) or {}

    @property
    def total_reads(self) -> int:
        return sum(self.reads.values())

    def close(self) -> None:
        self.closed = True


class MockResourceStore:
    """ResourceStore keeping serialized manifests keyed by ``namespace/name``."""

    def __init__(self) -> None:
        self._objects: dict[str, dict[str, Any]] = {}
        self._version = 0
        self._conflicts = 0
        self._failures: list[ResourceStoreError] = []
        self.writes: list[str] = []

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def add(self, resource: FivetranConnector) -> FivetranConnector:
        manifest = resource.to_manifest()
        manifest["metadata"]["resourceVersion"] = self._bump()
        manifest["metadata"].setdefault("generation", 1)
        if not manifest["metadata"]["generation"]:
            manifest["metadata"]["generation"] = 1
        self._objects[resource.key] = manifest
        return FivetranConnector.model_validate(copy.deepcopy(manifest))

    def modify(self, key: str, **metadata: Any) -> None:
        """Change metadata out of band, as another client would."""
        manifest = self._objects[key]
        manifest["metadata"].update(metadata)
        manifest["metadata"]["resourceVersion"] = self._bump()

    def conflict_next_writes(self, count: int = 1) -> None:
        self._conflicts += count

    def fail_next_write(self, error: ResourceStoreError) -> None:
        self._failures.append(error)

    def exists(self, key: str) -> bool:
        return key in self._objects

    # -------------------------------------------------------------------------
    # ResourceStore
    # -------------------------------------------------------------------------

    def get(self, key: str) -> FivetranConnector | None:
        manifest = self._objects.get(key)
        if manifest is None:
            return None
        return FivetranConnector.model_validate(copy.deepcopy(manifest))

    def update(self, resource: FivetranConnector) -> FivetranConnector:
        stored = self._check_write(resource, "update")
        incoming = resource.to_manifest()

        metadata = stored["metadata"]
        for field in ("labels", "annotations", "finalizers"):
            metadata[field] = incoming["metadata"].get(field, [] if field == "finalizers" else {})
        if incoming["spec"] != stored["spec"]:
            stored["spec"] = incoming["spec"]
            metadata["generation"] = metadata.get("generation", 1) + 1
        metadata["resourceVersion"] = self._bump()

        if metadata.get("deletionTimestamp") and not metadata["finalizers"]:
            del self._objects[resource.key]
        return FivetranConnector.model_validate(copy.deepcopy(stored))

    def update_status(self, resource: FivetranConnector) -> FivetranConnector:
        stored = self._check_write(resource, "update_status")
        stored["status"] = resource.to_manifest().get("status", {})
        stored["metadata"]["resourceVersion"] = self._bump()
        return FivetranConnector.model_validate(copy.deepcopy(stored))

    def list(self) -> list[FivetranConnector]:
        return [
            FivetranConnector.model_validate(copy.deepcopy(manifest))
            for manifest in self._objects.values()
        ]

    def _check_write(self, resource: FivetranConnector, operation: str) -> dict[str, Any]:
        self.writes.append(operation)
        if self._failures:
            raise self._failures.pop(0)
        stored = self._objects.get(resource.key)
        if stored is None:
            raise ResourceStoreError(f"{resource.key} not found")
        if self._conflicts:
            self._conflicts -= 1
            raise ResourceConflictError(f"{resource.key} was modified concurrently")
        if resource.metadata.resource_version != stored["metadata"]["resourceVersion"]:
            raise ResourceConflictError(f"{resource.key} was modified concurrently")
        return stored

    def _bump(self) -> str:
        self._version += 1
        return str(self._version)
