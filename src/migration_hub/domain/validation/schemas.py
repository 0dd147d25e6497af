"""Pandera schemas built from entity format checks.

Usage:
    >>> from migration_hub.domain.validation.schemas import build_format_schema
    >>> schema = build_format_schema(entity)
    >>> failures = collect_format_failures(schema, chunk, legacy_field="legacy_id")
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pandas as pd
import pandera.pandas as pa
from pandera.errors import SchemaErrors

from migration_hub.domain.models import EntityDefinition


def build_format_schema(entity: EntityDefinition) -> Optional[pa.DataFrameSchema]:
    """Return a non-strict schema covering the entity's format checks, or None."""
    if not entity.format_checks:
        return None

    columns: Dict[str, pa.Column] = {}
    for rule in entity.format_checks:
        checks = []
        if rule.pattern is not None:
            checks.append(
                pa.Check.str_matches(
                    rule.pattern, error=rule.description or f"{rule.field} format"
                )
            )
        columns[rule.field] = pa.Column(
            rule.dtype,
            checks=checks,
            nullable=rule.nullable,
            coerce=False,
            required=True,
        )
    return pa.DataFrameSchema(columns, strict=False, name=f"{entity.name}_formats")


def collect_format_failures(
    schema: pa.DataFrameSchema, dataframe: pd.DataFrame, legacy_field: str
) -> List[Dict[str, Any]]:
    """
    Validate lazily and return one dict per failure case.

    Each dict carries the column, the failing check, the offending value and,
    when the failure is row-level, the legacy id of the row.
    """
    try:
        schema.validate(dataframe, lazy=True)
        return []
    except SchemaErrors as exc:
        failure_cases = exc.failure_cases

    failures: List[Dict[str, Any]] = []
    for record in failure_cases.to_dict(orient="records"):
        index = record.get("index")
        legacy_id = None
        if index is not None and not pd.isna(index) and index in dataframe.index:
            legacy_id = int(dataframe.at[index, legacy_field])
        failures.append(
            {
                "column": record.get("column"),
                "check": str(record.get("check")),
                "failure_case": None
                if pd.isna(record.get("failure_case"))
                else str(record.get("failure_case")),
                "legacy_id": legacy_id,
            }
        )
    return failures
