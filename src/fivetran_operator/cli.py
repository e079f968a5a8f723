"""Fivetran Operator CLI (fto).

Offline checks for FivetranConnector manifests plus single-shot and
continuous reconciliation against a cluster.

Usage:
    fto validate connector.yaml                 # Validate a manifest
    fto fingerprint connector.yaml              # Print config and schema fingerprints
    fto compare-schema connector.yaml live.json # Diff a saved schema response
    fto resolve connector.yaml                  # Resolve vault references, masked
    fto reconcile fivetran-operator/my-conn     # One reconciliation pass
    fto run                                     # Run the operator
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from .config import Config, ConfigurationError
from .fingerprint import config_fingerprint, schema_fingerprint
from .fivetran_client import SchemaDetails
from .main import build_components, build_secret_store, main, setup_logging
from .models import FivetranConnector
from .resource_store import KubernetesResourceStore, load_kube_config
from .schema_comparison import compare_schema
from .secrets import SecretResolutionError, SecretResolver
from .security import CredentialLeakError, mask_resolved
from .spec_loader import SpecLoadError, format_validation_error, load_json_document, load_manifest

# Exit codes
EXIT_MISMATCH = 1


def load_config() -> Config:
    """Load operator configuration, reported as a CLI error on failure."""
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def load_resource(path: str) -> FivetranConnector:
    try:
        return load_manifest(Path(path))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="fto")
def cli() -> None:
    """Fivetran Operator CLI (fto).

    Validate FivetranConnector manifests and reconcile them against Fivetran.

    \b
    Quick Start:
        fto validate connector.yaml   # Check a manifest before applying it
        fto run                       # Run the operator locally
    """
    pass


# =============================================================================
# Manifest Commands
# =============================================================================


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
def validate(file: str) -> None:
    """Validate a FivetranConnector manifest."""
    resource = load_resource(file)

    if resource.spec.has_schema_config:
        assert resource.spec.connector_schemas is not None
        try:
            resource.spec.connector_schemas.to_api_payload()
        except ValueError as e:
            raise click.ClickException(f"Invalid connectorSchemas in {file}: {e}") from e

    click.secho(f"✓ {resource.key} is valid", fg="green")
    click.echo(f"  Service: {resource.spec.connector.service}")
    click.echo(f"  Group: {resource.spec.connector.group_id}")
    click.echo(f"  Schemas declared: {'yes' if resource.spec.has_schema_config else 'no'}")


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
def fingerprint(file: str) -> None:
    """Print the connector and schema fingerprints of a manifest.

    These are the values the operator stores in its hash annotations.
    """
    resource = load_resource(file)
    click.echo(f"connector: {config_fingerprint(resource.spec)}")
    click.echo(f"schema: {schema_fingerprint(resource.spec)}")


@cli.command("compare-schema")
@click.argument("manifest", type=click.Path(dir_okay=False))
@click.argument("live_json", type=click.Path(dir_okay=False))
def compare_schema_command(manifest: str, live_json: str) -> None:
    """Compare declared schemas with a saved schema details response.

    LIVE_JSON is the body of GET /connections/{id}/schemas, with or without
    the "data" envelope. Exits with status 1 when anything mismatches.

    \b
    Examples:
        fto compare-schema connector.yaml live.json
    """
    resource = load_resource(manifest)
    if not resource.spec.has_schema_config:
        raise click.ClickException(f"{manifest} declares no connectorSchemas")

    try:
        document = load_json_document(Path(live_json))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    payload = document.get("data", document)
    try:
        live = SchemaDetails.model_validate(payload)
    except ValidationError as e:
        raise click.ClickException(
            f"Invalid schema details in {live_json}:\n{format_validation_error(e)}"
        ) from e

    matches, report = compare_schema(live, resource.spec.connector_schemas)
    if matches:
        click.secho(f"✓ {report.render()}", fg="green")
        return

    click.secho(f"✗ {report.render()}", fg="red", err=True)
    sys.exit(EXIT_MISMATCH)


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
def resolve(file: str) -> None:
    """Resolve vault references in a manifest's config and auth.

    Uses the secret backend configured through the environment. Resolved
    values are masked in the output.
    """
    resource = load_resource(file)
    config = load_config()

    try:
        load_kube_config()
        store = KubernetesResourceStore(config.namespace)
        secret_store = build_secret_store(config, store)
    except CredentialLeakError as e:
        raise click.ClickException(str(e)) from e

    connector = resource.spec.connector
    declared = {"config": connector.config, "auth": connector.auth or {}}
    resolver = SecretResolver(secret_store)
    try:
        resolved = {key: resolver.resolve(value, key) for key, value in declared.items()}
    except SecretResolutionError as e:
        raise click.ClickException(str(e)) from e
    finally:
        secret_store.close()

    click.echo(yaml.safe_dump(mask_resolved(declared, resolved), sort_keys=False), nl=False)


# =============================================================================
# Operator Commands
# =============================================================================


@cli.command()
@click.argument("key")
def reconcile(key: str) -> None:
    """Run one reconciliation pass for NAMESPACE/NAME.

    \b
    Examples:
        fto reconcile fivetran-operator/postgres-prod
    """
    if "/" not in key:
        raise click.BadParameter("must be NAMESPACE/NAME", param_hint="KEY")

    setup_logging(logging.INFO)
    config = load_config()

    try:
        components = build_components(config)
    except CredentialLeakError as e:
        raise click.ClickException(str(e)) from e

    try:
        outcome = components.reconciler.reconcile(key)
    finally:
        components.close()

    click.echo(f"Resource: {outcome.key}")
    click.echo(f"  Action: {outcome.action.value}")
    if outcome.connector_id:
        click.echo(f"  Connector: {outcome.connector_id}")
    if outcome.requeue_after is not None:
        click.echo(f"  Requeue after: {outcome.requeue_after}s")

    if not outcome.success:
        raise click.ClickException(f"Reconciliation failed: {outcome.error}")
    click.secho("✓ Reconciled", fg="green")


@cli.command()
def run() -> None:
    """Run the operator until SIGTERM or SIGINT."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
