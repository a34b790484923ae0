"""Supabase table and column names used by the inspection dashboard.

Deployments whose tables are named differently can override any entry through
the ``SUPABASE_SCHEMA_JSON`` environment variable, for example::

    SUPABASE_SCHEMA_JSON='{"inspections": {"name": "jcb_inspections"}}'

Identifiers without a configured mapping fall back to themselves.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class SupabaseTable:
    """A table (or RPC function) name plus its logical-to-actual columns."""

    name: str
    columns: Mapping[str, str] = field(default_factory=dict)


_SEGMENT_TOTALS = tuple(
    f"{segment}total_{metric}"
    for segment in ("", "production_", "dpdi_", "combined_")
    for metric in ("inspections", "faults", "dpu")
)

_LOGICAL_COLUMNS: Dict[str, tuple] = {
    "inspections": (
        "id",
        "date",
        "year",
        "stages",
        "reported_totals",
        *_SEGMENT_TOTALS,
        "signout_volume",
        "updated_at",
    ),
    "year_targets": (
        "year",
        "combined_target",
        "production_target",
        "dpdi_target",
        "allocation_strategy",
        "baseline",
        "stage_targets",
        "created_at",
        "updated_at",
    ),
    "intervention_plans": (
        "stage_id",
        "stage_name",
        "year",
        "created_by",
        "current_state",
        "interventions",
        "projections",
        "created_at",
        "updated_at",
    ),
    # Postgres function doing the delete-and-insert of a full restore.
    "replace_inspections": (),
}


def _default_schema() -> Dict[str, SupabaseTable]:
    return {
        identifier: SupabaseTable(identifier, {column: column for column in columns})
        for identifier, columns in _LOGICAL_COLUMNS.items()
    }


def _string_pairs(columns: Any) -> Dict[str, str]:
    if not isinstance(columns, Mapping):
        return {}
    return {
        logical: actual
        for logical, actual in columns.items()
        if isinstance(logical, str) and isinstance(actual, str)
    }


def _apply_override(
    schema: Dict[str, SupabaseTable], identifier: Any, entry: Any
) -> None:
    if not isinstance(identifier, str) or not isinstance(entry, Mapping):
        return
    name = entry.get("name")
    if not name or not isinstance(name, str):
        return
    base = schema.get(identifier)
    merged = dict(base.columns) if base else {}
    merged.update(_string_pairs(entry.get("columns")))
    schema[identifier] = SupabaseTable(name, merged)


def load_schema(raw_schema: Optional[str] = None) -> Dict[str, SupabaseTable]:
    """Build the schema, applying the JSON overrides in ``raw_schema``.

    Unparseable JSON and entries without a table ``name`` leave the defaults
    untouched. Column overrides are merged over the default columns.
    """

    schema = _default_schema()
    try:
        overrides = json.loads(raw_schema) if raw_schema else {}
    except json.JSONDecodeError:
        overrides = {}
    if isinstance(overrides, Mapping):
        for identifier, entry in overrides.items():
            _apply_override(schema, identifier, entry)
    return schema


SUPABASE_SCHEMA: Dict[str, SupabaseTable] = load_schema(os.getenv("SUPABASE_SCHEMA_JSON"))


def _lookup(identifier: str) -> Optional[SupabaseTable]:
    return SUPABASE_SCHEMA.get(identifier)


def table_name(identifier: str) -> str:
    table = _lookup(identifier)
    return table.name if table is not None else identifier


def table_columns(table_identifier: str) -> Mapping[str, str]:
    table = _lookup(table_identifier)
    return table.columns if table is not None else {}


def column_name(table_identifier: str, column_identifier: str) -> str:
    return table_columns(table_identifier).get(column_identifier, column_identifier)


def to_supabase_payload(table_identifier: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Rename the logical keys of ``payload`` to the configured columns."""

    columns = table_columns(table_identifier)
    return {columns.get(key, key): value for key, value in payload.items()}


def from_supabase_row(table_identifier: str, row: Mapping[str, Any]) -> Dict[str, Any]:
    """Rename configured columns in ``row`` back to logical keys."""

    logical = {actual: key for key, actual in table_columns(table_identifier).items()}
    return {logical.get(key, key): value for key, value in row.items()}
