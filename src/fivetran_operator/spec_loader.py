"""Loading FivetranConnector manifests and JSON documents from disk.

All file reads enforce a size limit, and input is validated at the boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import API_GROUP_VERSION, KIND, MAX_MANIFEST_FILE_SIZE_BYTES
from .models import FivetranConnector

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a manifest cannot be loaded or fails validation."""

    pass


def _read_text(path: Path) -> str:
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"File exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read file {path}: {e}") from e


def format_validation_error(error: ValidationError) -> str:
    """One ``  - loc: msg`` line per pydantic error."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)


def parse_manifest(raw_data: Any, source: str = "<manifest>", default_name: str = "") -> FivetranConnector:
    """Validate an already-parsed manifest.

    Accepts either a full resource (apiVersion, kind, metadata, spec) or the
    bare spec, in which case ``default_name`` names the resource.

    Raises:
        SpecLoadError: If the document is not a valid FivetranConnector.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest must contain a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        if raw_data.get("apiVersion") != API_GROUP_VERSION:
            raise SpecLoadError(
                f"Unsupported apiVersion '{raw_data.get('apiVersion')}' in {source}, "
                f"expected '{API_GROUP_VERSION}'"
            )
        if raw_data.get("kind", KIND) != KIND:
            raise SpecLoadError(
                f"Unsupported kind '{raw_data.get('kind')}' in {source}, expected '{KIND}'"
            )
        document = raw_data
    else:
        document = {
            "apiVersion": API_GROUP_VERSION,
            "kind": KIND,
            "metadata": {"name": default_name or "unnamed"},
            "spec": raw_data,
        }

    try:
        return FivetranConnector.model_validate(document)
    except ValidationError as e:
        raise SpecLoadError(f"Validation failed for {source}:\n{format_validation_error(e)}") from e


def load_manifest(path: Path) -> FivetranConnector:
    """Load and validate a FivetranConnector manifest from YAML.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    content = _read_text(path)

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    resource = parse_manifest(raw_data, str(path), default_name=path.stem)
    logger.info("Loaded manifest '%s' from %s", resource.key, path)
    return resource


def load_json_document(path: Path) -> dict[str, Any]:
    """Load a JSON object, such as a saved schema details response.

    Raises:
        SpecLoadError: If the file is missing, too large, or not a JSON object.
    """
    content = _read_text(path)

    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(document, dict):
        raise SpecLoadError(f"Document must be a JSON object: {path}")
    return document
