"""Structural comparison of the live schema against the declared one.

Only schemas and tables are checked: change handling, schema and table
enabled states, and table sync modes. Columns are applied but never compared,
since reading them back costs one API call per table on wide sources.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .fivetran_client import LiveTable, SchemaDetails
from .models import SchemaConfig, TableObject

NO_MISMATCH_MESSAGE = "No schema mismatches found"


def _render_bool(value: bool) -> str:
    return "true" if value else "false"


@dataclass
class SchemaMismatchReport:
    """Every discrepancy found between live and declared schema."""

    schema_change_handling: str | None = None
    missing_schemas: list[str] = field(default_factory=list)
    schema_mismatches: dict[str, str] = field(default_factory=dict)
    table_mismatches: dict[str, list[str]] = field(default_factory=dict)

    @property
    def has_mismatch(self) -> bool:
        return bool(
            self.schema_change_handling
            or self.missing_schemas
            or self.schema_mismatches
            or self.table_mismatches
        )

    def render(self) -> str:
        """Human-readable summary, schemas in name order."""
        if not self.has_mismatch:
            return NO_MISMATCH_MESSAGE

        parts: list[str] = []
        if self.schema_change_handling:
            parts.append(f"Schema Change Handling: {self.schema_change_handling}")
        if self.missing_schemas:
            parts.append(f"Missing Schemas: {', '.join(sorted(self.missing_schemas))}")
        for schema in sorted(self.schema_mismatches):
            parts.append(f"Schema {schema}: {self.schema_mismatches[schema]}")
        for schema in sorted(self.table_mismatches):
            parts.append(f"Schema {schema} tables: {', '.join(self.table_mismatches[schema])}")
        return "; ".join(parts)

    def __str__(self) -> str:
        return self.render()


def compare_schema(
    live: SchemaDetails, declared: SchemaConfig | None
) -> tuple[bool, SchemaMismatchReport]:
    """Return whether ``declared`` is fully realized in ``live``, plus the report.

    A live flag that is unset is not judged. A declared schema that is absent
    from the live data is always a mismatch.
    """
    report = SchemaMismatchReport()
    if declared is None:
        return True, report

    expected_handling = declared.schema_change_handling
    if expected_handling and live.schema_change_handling != expected_handling:
        report.schema_change_handling = (
            f"expected {expected_handling}, got {live.schema_change_handling}"
        )

    for schema_name in sorted(declared.schemas):
        declared_schema = declared.schemas[schema_name]
        live_schema = live.schemas.get(schema_name)
        if live_schema is None:
            report.missing_schemas.append(schema_name)
            continue

        if live_schema.enabled is not None and live_schema.enabled != declared_schema.enabled:
            report.schema_mismatches[schema_name] = (
                f"enabled state mismatch: expected {_render_bool(declared_schema.enabled)}, "
                f"got {_render_bool(live_schema.enabled)}"
            )

        issues = _compare_tables(live_schema.tables, declared_schema.tables)
        if issues:
            report.table_mismatches[schema_name] = issues

    return not report.has_mismatch, report


def _compare_tables(live: dict[str, LiveTable], declared: dict[str, TableObject]) -> list[str]:
    mismatches: list[str] = []

    for table_name in sorted(declared):
        declared_table = declared[table_name]
        live_table = live.get(table_name)
        if live_table is None:
            mismatches.append(f"table {table_name} not found in source")
            continue

        issues: list[str] = []
        if live_table.enabled is not None and live_table.enabled != declared_table.enabled:
            issues.append(
                f"enabled state mismatch: expected {_render_bool(declared_table.enabled)}, "
                f"got {_render_bool(live_table.enabled)}"
            )

        if declared_table.sync_mode:
            if live_table.sync_mode is None:
                issues.append(f"sync mode mismatch: expected {declared_table.sync_mode}, got nil")
            elif live_table.sync_mode != declared_table.sync_mode:
                issues.append(
                    f"sync mode mismatch: expected {declared_table.sync_mode}, "
                    f"got {live_table.sync_mode}"
                )

        if issues:
            mismatches.append(f"table {table_name}: {', '.join(issues)}")

    return mismatches
