"""Tests for manifest loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from fivetran_operator.config import API_GROUP_VERSION, MAX_MANIFEST_FILE_SIZE_BYTES
from fivetran_operator.spec_loader import (
    SpecLoadError,
    load_json_document,
    load_manifest,
    parse_manifest,
)
from fivetran_mock import connector_spec, make_resource, schema_spec


def write_yaml(path: Path, document: object) -> Path:
    path.write_text(yaml.safe_dump(document))
    return path


class TestLoadManifest:
    """Tests for loading YAML manifests."""

    def test_full_resource(self, tmp_path: Path) -> None:
        """Test that a complete resource is loaded as is."""
        document = make_resource(schemas=schema_spec()).to_manifest()
        path = write_yaml(tmp_path / "connector.yaml", document)

        resource = load_manifest(path)

        assert resource.key == "fivetran-operator/postgres-prod"
        assert resource.spec.has_schema_config

    def test_bare_spec_is_named_after_file(self, tmp_path: Path) -> None:
        """Test that a spec without envelope gets its name from the file."""
        path = write_yaml(tmp_path / "orders-db.yaml", {"connector": connector_spec()})

        resource = load_manifest(path)

        assert resource.metadata.name == "orders-db"
        assert resource.api_version == API_GROUP_VERSION

    def test_wrong_api_version(self, tmp_path: Path) -> None:
        """Test that other API groups are refused."""
        document = make_resource().to_manifest()
        document["apiVersion"] = "example.com/v1"
        path = write_yaml(tmp_path / "connector.yaml", document)

        with pytest.raises(SpecLoadError, match="Unsupported apiVersion 'example.com/v1'"):
            load_manifest(path)

    def test_wrong_kind(self, tmp_path: Path) -> None:
        """Test that other kinds are refused."""
        document = make_resource().to_manifest()
        document["kind"] = "Deployment"
        path = write_yaml(tmp_path / "connector.yaml", document)

        with pytest.raises(SpecLoadError, match="Unsupported kind"):
            load_manifest(path)

    def test_validation_errors_are_listed(self, tmp_path: Path) -> None:
        """Test that each validation failure is reported with its location."""
        path = write_yaml(
            tmp_path / "connector.yaml", {"connector": connector_spec(sync_frequency=7)}
        )

        with pytest.raises(SpecLoadError) as exc_info:
            load_manifest(path)

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "  - spec.connector.sync_frequency:" in message

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file is reported."""
        with pytest.raises(SpecLoadError, match="File not found"):
            load_manifest(tmp_path / "missing.yaml")

    def test_size_limit(self, tmp_path: Path) -> None:
        """Test that oversized files are refused before parsing."""
        path = tmp_path / "huge.yaml"
        path.write_text("#" * (MAX_MANIFEST_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="exceeds maximum size"):
            load_manifest(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that a YAML syntax error is reported."""
        path = tmp_path / "broken.yaml"
        path.write_text("connector: [unclosed")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_manifest(path)


class TestParseManifest:
    """Tests for already-parsed documents."""

    def test_not_a_mapping(self) -> None:
        """Test that lists and scalars are refused."""
        with pytest.raises(SpecLoadError, match="YAML mapping"):
            parse_manifest(["connector"])


class TestLoadJsonDocument:
    """Tests for loading JSON documents."""

    def test_object(self, tmp_path: Path) -> None:
        """Test that a JSON object is returned."""
        path = tmp_path / "schema.json"
        path.write_text('{"data": {"schema_change_handling": "ALLOW_ALL"}}')

        assert load_json_document(path) == {"data": {"schema_change_handling": "ALLOW_ALL"}}

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Test that malformed JSON is reported."""
        path = tmp_path / "schema.json"
        path.write_text("{not json")

        with pytest.raises(SpecLoadError, match="Invalid JSON"):
            load_json_document(path)

    def test_not_an_object(self, tmp_path: Path) -> None:
        """Test that top-level arrays are refused."""
        path = tmp_path / "schema.json"
        path.write_text("[1, 2]")

        with pytest.raises(SpecLoadError, match="JSON object"):
            load_json_document(path)
