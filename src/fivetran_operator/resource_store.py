"""Access to FivetranConnector resources in the Kubernetes API.

Writes carry the resource version they were based on, so a write built on a
stale read fails with ResourceConflictError instead of overwriting a newer
object.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from .config import API_GROUP, API_VERSION, PLURAL
from .models import FivetranConnector

logger = logging.getLogger(__name__)


class ResourceStoreError(Exception):
    """Raised when the resource store cannot be read or written."""

    pass


class ResourceConflictError(ResourceStoreError):
    """A write was based on an outdated resource version."""

    pass


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key.

    Raises:
        ValueError: If the key is not of that form.
    """
    namespace, sep, name = key.partition("/")
    if not sep or not namespace or not name or "/" in name:
        raise ValueError(f"resource key must be 'namespace/name': {key!r}")
    return namespace, name


class ResourceStore(Protocol):
    """Versioned storage of FivetranConnector resources."""

    def get(self, key: str) -> FivetranConnector | None:
        """Return the resource, or None when it does not exist."""
        ...

    def update(self, resource: FivetranConnector) -> FivetranConnector:
        """Write metadata and spec. Status is ignored."""
        ...

    def update_status(self, resource: FivetranConnector) -> FivetranConnector:
        """Write the status subresource only."""
        ...

    def list(self) -> list[FivetranConnector]: ...


def load_kube_config() -> None:
    """Prefer in-cluster configuration, fall back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        logger.warning("Failed to load in-cluster config, trying local kubeconfig")
        config.load_kube_config()


class KubernetesResourceStore:
    """ResourceStore backed by the custom objects API of one namespace."""

    def __init__(
        self,
        namespace: str,
        custom_api: client.CustomObjectsApi | None = None,
        core_api: client.CoreV1Api | None = None,
    ) -> None:
        self.namespace = namespace
        self._custom = custom_api or client.CustomObjectsApi()
        self._core = core_api or client.CoreV1Api()

    def get(self, key: str) -> FivetranConnector | None:
        namespace, name = split_key(key)
        try:
            obj = self._custom.get_namespaced_custom_object(
                API_GROUP, API_VERSION, namespace, PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ResourceStoreError(f"failed to get {key}: {e.reason}") from e
        return self._parse(obj)

    def update(self, resource: FivetranConnector) -> FivetranConnector:
        meta = resource.metadata
        try:
            obj = self._custom.replace_namespaced_custom_object(
                API_GROUP, API_VERSION, meta.namespace, PLURAL, meta.name, resource.to_manifest()
            )
        except ApiException as e:
            raise self._write_error(resource, e) from e
        return self._parse(obj)

    def update_status(self, resource: FivetranConnector) -> FivetranConnector:
        meta = resource.metadata
        try:
            obj = self._custom.replace_namespaced_custom_object_status(
                API_GROUP, API_VERSION, meta.namespace, PLURAL, meta.name, resource.to_manifest()
            )
        except ApiException as e:
            raise self._write_error(resource, e) from e
        return self._parse(obj)

    def list(self) -> list[FivetranConnector]:
        try:
            response = self._custom.list_namespaced_custom_object(
                API_GROUP, API_VERSION, self.namespace, PLURAL
            )
        except ApiException as e:
            raise ResourceStoreError(
                f"failed to list {PLURAL} in {self.namespace}: {e.reason}"
            ) from e

        resources: list[FivetranConnector] = []
        for obj in response.get("items", []):
            try:
                resources.append(FivetranConnector.model_validate(obj))
            except ValidationError as e:
                name = obj.get("metadata", {}).get("name", "<unknown>")
                logger.warning(
                    "Skipping invalid resource",
                    extra={"resource": f"{self.namespace}/{name}", "error": str(e)},
                )
        return resources

    def read_secret_data(self, name: str) -> dict[str, str]:
        """Read and decode a Secret in the watched namespace."""
        try:
            secret = self._core.read_namespaced_secret(name, self.namespace)
        except ApiException as e:
            raise ResourceStoreError(
                f"failed to read secret {self.namespace}/{name}: {e.reason}"
            ) from e
        return {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (secret.data or {}).items()
        }

    @staticmethod
    def _parse(obj: dict[str, Any]) -> FivetranConnector:
        try:
            return FivetranConnector.model_validate(obj)
        except ValidationError as e:
            raise ResourceStoreError(f"invalid FivetranConnector returned: {e}") from e

    @staticmethod
    def _write_error(resource: FivetranConnector, e: ApiException) -> ResourceStoreError:
        if e.status == 409:
            return ResourceConflictError(
                f"{resource.key} was modified concurrently "
                f"(resourceVersion {resource.metadata.resource_version})"
            )
        return ResourceStoreError(f"failed to write {resource.key}: {e.reason}")
