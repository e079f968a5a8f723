"""Deterministic fingerprints of the declared connector and schema state.

A fingerprint is stored as an annotation after the corresponding section was
applied successfully. Comparing the stored value with a fresh one tells the
reconciler whether any remote work is needed.

Fingerprints are computed over the declared documents, before secret
references are resolved, so rotating a secret in the store does not trigger
an update on its own.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from .models import FivetranConnectorSpec

NO_SCHEMA_FINGERPRINT = "no-schema-declared"


def canonical_json(document: Any) -> str:
    """Serialize with sorted keys and compact separators."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(document: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``document``."""
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


def changed(digest: str, stored: str | None) -> bool:
    """True when nothing was stored yet or the stored digest differs."""
    return not stored or digest != stored


def config_fingerprint(spec: FivetranConnectorSpec) -> str:
    return fingerprint(spec.connector.model_dump(mode="json", exclude_none=True))


def schema_fingerprint(spec: FivetranConnectorSpec) -> str:
    if spec.connector_schemas is None:
        return NO_SCHEMA_FINGERPRINT
    return fingerprint(spec.connector_schemas.model_dump(mode="json", exclude_none=True))
