"""Resolution of ``vault:<path>#<key>`` references in nested documents.

The connector ``config`` and ``auth`` documents are opaque trees. Any string
leaf that starts with ``vault:`` is replaced with the value read from the
secret store. Resolution is all-or-nothing: the input document is never
modified and the first failure aborts the whole call.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "vault:"


class SecretStoreError(Exception):
    """Raised by a secret store when it cannot be reached or authenticated against."""

    pass


class SecretStoreAuthenticationError(SecretStoreError):
    """Raised when the store client cannot be initialized or logged in."""

    pass


class SecretStore(Protocol):
    """Read access to a key/value secret store."""

    def read_secret(self, path: str) -> Mapping[str, Any] | None:
        """Return the key/value data stored at ``path``.

        Returns None when nothing exists at ``path``. Returns an empty mapping
        when the path exists but carries no data. Raises SecretStoreError on
        transport or authentication failures.
        """
        ...


# =============================================================================
# Errors
# =============================================================================


class SecretResolutionError(Exception):
    """Base class for every failure to resolve a secret reference."""

    retryable = False

    def __init__(self, message: str, key_path: str, reference: str) -> None:
        self.key_path = key_path
        self.reference = reference
        if key_path:
            message = f"{key_path}: vault reference '{reference}': {message}"
        super().__init__(message)


class InvalidSecretReferenceError(SecretResolutionError):
    def __init__(self, key_path: str, reference: str) -> None:
        super().__init__(
            "invalid vault reference format (expected format: vault:path#key)",
            key_path,
            reference,
        )


class SecretNotFoundError(SecretResolutionError):
    def __init__(self, path: str, key_path: str, reference: str) -> None:
        self.path = path
        super().__init__(f"secret not found at path '{path}'", key_path, reference)


class SecretDataMissingError(SecretResolutionError):
    def __init__(self, path: str, key_path: str, reference: str) -> None:
        self.path = path
        super().__init__(f"secret data is nil at path '{path}'", key_path, reference)


class SecretKeyNotFoundError(SecretResolutionError):
    def __init__(
        self, key: str, path: str, available: list[str], key_path: str, reference: str
    ) -> None:
        self.key = key
        self.path = path
        self.available = sorted(available)
        super().__init__(
            f"key not found in vault secret '{key}' at path '{path}' "
            f"(available keys: {self.available})",
            key_path,
            reference,
        )


class SecretStoreUnavailableError(SecretResolutionError):
    """The store could not be read. Worth another attempt later."""

    retryable = True

    def __init__(self, path: str, cause: Exception, key_path: str, reference: str) -> None:
        self.path = path
        super().__init__(
            f"failed to read secret at path '{path}': {cause}", key_path, reference
        )


# =============================================================================
# References
# =============================================================================


@dataclass(frozen=True)
class SecretReference:
    """A parsed ``vault:<path>#<key>`` reference."""

    path: str
    key: str

    @classmethod
    def parse(cls, value: str, key_path: str = "") -> SecretReference:
        """Split at the first ``#``. Both halves must be non-empty.

        Raises:
            InvalidSecretReferenceError: If the grammar is violated.
        """
        if not value.startswith(REFERENCE_PREFIX):
            raise InvalidSecretReferenceError(key_path, value)
        path, sep, key = value[len(REFERENCE_PREFIX) :].partition("#")
        if not sep or not path or not key:
            raise InvalidSecretReferenceError(key_path, value)
        return cls(path=path, key=key)


def is_reference(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(REFERENCE_PREFIX)


def _child_path(parent: str, key: str) -> str:
    return f"{parent}.{key}" if parent else key


# =============================================================================
# Resolver
# =============================================================================


class SecretResolver:
    """Resolves references against one store with a cache scoped to one pass.

    Each path is fetched at most once per resolver instance, so a resolver
    must not outlive the reconciliation pass that created it.
    """

    def __init__(self, store: SecretStore) -> None:
        self._store = store
        self._cache: dict[str, Mapping[str, Any]] = {}

    def resolve(self, document: Any, key_path: str = "") -> Any:
        """Return a resolved copy of ``document``."""
        match document:
            case Mapping():
                return {
                    key: self.resolve(value, _child_path(key_path, str(key)))
                    for key, value in document.items()
                }
            case list() | tuple():
                return [
                    self.resolve(item, f"{key_path}[{index}]")
                    for index, item in enumerate(document)
                ]
            case str() if document.startswith(REFERENCE_PREFIX):
                return self._lookup(document, key_path)
            case _:
                return document

    def _lookup(self, value: str, key_path: str) -> Any:
        reference = SecretReference.parse(value, key_path)
        data = self._read(reference.path, key_path, value)
        if reference.key not in data:
            raise SecretKeyNotFoundError(
                reference.key, reference.path, list(data.keys()), key_path, value
            )
        return data[reference.key]

    def _read(self, path: str, key_path: str, reference: str) -> Mapping[str, Any]:
        cached = self._cache.get(path)
        if cached is not None:
            return cached

        try:
            data = self._store.read_secret(path)
        except SecretStoreError as e:
            raise SecretStoreUnavailableError(path, e, key_path, reference) from e

        if data is None:
            raise SecretNotFoundError(path, key_path, reference)
        if not data:
            raise SecretDataMissingError(path, key_path, reference)

        logger.debug("Fetched secret", extra={"secret_path": path})
        self._cache[path] = data
        return data


def resolve_secrets(document: Any, store: SecretStore) -> Any:
    """Resolve every reference in ``document`` with a fresh per-call cache."""
    return SecretResolver(store).resolve(document)
