"""Dialect-aware INSERT ... ON CONFLICT helpers for control tables."""

from typing import Any, Dict, List, Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection


def upsert_row(
    conn: Connection,
    table: sa.Table,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
) -> None:
    """
    Insert ``values`` or update ``update_columns`` when the key already exists.

    PostgreSQL and SQLite use native ON CONFLICT DO UPDATE; any other dialect
    falls back to update-then-insert inside the caller's transaction.
    """
    dialect = conn.dialect.name
    if dialect in ("postgresql", "sqlite"):
        module = postgresql if dialect == "postgresql" else sqlite
        stmt = module.insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={col: stmt.excluded[col] for col in update_columns},
        )
        conn.execute(stmt)
        return

    # Generic approach: try update first, insert when nothing matched
    predicate = sa.and_(*[table.c[col] == values[col] for col in conflict_columns])
    result = conn.execute(
        table.update().where(predicate).values({col: values[col] for col in update_columns})
    )
    if not result.rowcount:
        conn.execute(table.insert().values(**values))


def chunked(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    """Split a sequence into lists of at most ``size`` items."""
    return [items[i : i + size] for i in range(0, len(items), size)]
