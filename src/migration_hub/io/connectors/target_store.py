"""
Write access to the normalized target store.

Target tables are addressed through the entity definition: ``target_key``
receives the deterministic new id and ``target_legacy_field`` carries the
legacy id that makes every write idempotent. Writes run on the caller's
connection so the target row and its mapping row share one transaction.
"""

from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from migration_hub.domain.models import EntityDefinition, ForeignReference
from migration_hub.io.sql_utils import quote_ident, quote_table
from migration_hub.io.upsert import chunked
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)


class TargetStore:
    """Target store operations used by the executor and validators."""

    LOOKUP_CHUNK_SIZE = 500

    def __init__(self, engine: Engine):
        self.engine = engine

    def find_id_by_legacy(
        self, conn: Connection, entity: EntityDefinition, legacy_id: int
    ) -> Optional[Any]:
        row = conn.execute(
            sa.text(
                f"SELECT {quote_ident(entity.target_key)} FROM {quote_table(entity.target_table)}"
                f" WHERE {quote_ident(entity.target_legacy_field)} = :legacy_id"
            ),
            {"legacy_id": legacy_id},
        ).fetchone()
        return row[0] if row is not None else None

    def upsert(
        self,
        conn: Connection,
        entity: EntityDefinition,
        new_id: str,
        legacy_id: int,
        values: Mapping[str, Any],
    ) -> str:
        """
        Insert the row or update it in place, keyed on the legacy id column.

        Returns:
            "inserted" or "updated"
        """
        owned = {entity.target_key, entity.target_legacy_field}
        payload = {k: v for k, v in values.items() if k not in owned}
        table = quote_table(entity.target_table)

        if self.find_id_by_legacy(conn, entity, legacy_id) is not None:
            if payload:
                assignments = ", ".join(
                    f"{quote_ident(col)} = :v_{i}" for i, col in enumerate(payload)
                )
                params = {f"v_{i}": v for i, v in enumerate(payload.values())}
                params["legacy_id"] = legacy_id
                conn.execute(
                    sa.text(
                        f"UPDATE {table} SET {assignments}"
                        f" WHERE {quote_ident(entity.target_legacy_field)} = :legacy_id"
                    ),
                    params,
                )
            return "updated"

        columns = [entity.target_key, entity.target_legacy_field, *payload.keys()]
        params = {f"v_{i}": v for i, v in enumerate([new_id, legacy_id, *payload.values()])}
        conn.execute(
            sa.text(
                f"INSERT INTO {table} ({', '.join(quote_ident(c) for c in columns)})"
                f" VALUES ({', '.join(f':v_{i}' for i in range(len(columns)))})"
            ),
            params,
        )
        return "inserted"

    def fetch_by_legacy_ids(
        self, entity: EntityDefinition, legacy_ids: Iterable[int]
    ) -> Dict[int, Dict[str, Any]]:
        """Target rows keyed by legacy id."""
        wanted = sorted({int(i) for i in legacy_ids})
        found: Dict[int, Dict[str, Any]] = {}
        legacy_col = quote_ident(entity.target_legacy_field)
        with self.engine.connect() as conn:
            for chunk in chunked(wanted, self.LOOKUP_CHUNK_SIZE):
                stmt = sa.text(
                    f"SELECT * FROM {quote_table(entity.target_table)}"
                    f" WHERE {legacy_col} IN :ids"
                ).bindparams(sa.bindparam("ids", expanding=True))
                for row in conn.execute(stmt, {"ids": list(chunk)}).mappings():
                    found[int(row[entity.target_legacy_field])] = dict(row)
        return found

    def count(self, entity: EntityDefinition) -> int:
        with self.engine.connect() as conn:
            return int(
                conn.execute(
                    sa.text(f"SELECT COUNT(*) FROM {quote_table(entity.target_table)}")
                ).scalar()
                or 0
            )

    def find_orphans(
        self,
        entity: EntityDefinition,
        reference: ForeignReference,
        referenced: EntityDefinition,
        limit: int,
    ) -> Tuple[int, List[int]]:
        """
        Rows whose non-null reference column points at no referenced row.

        Returns:
            (total orphan count, up to ``limit`` offending legacy ids)
        """
        child_fk = f"c.{quote_ident(reference.output_field)}"
        parent_key = f"p.{quote_ident(referenced.target_key)}"
        from_clause = (
            f" FROM {quote_table(entity.target_table)} c"
            f" LEFT JOIN {quote_table(referenced.target_table)} p ON {child_fk} = {parent_key}"
            f" WHERE {child_fk} IS NOT NULL AND {parent_key} IS NULL"
        )
        legacy_col = f"c.{quote_ident(entity.target_legacy_field)}"
        with self.engine.connect() as conn:
            total = int(conn.execute(sa.text(f"SELECT COUNT(*){from_clause}")).scalar() or 0)
            sample = [
                int(r[0])
                for r in conn.execute(
                    sa.text(f"SELECT {legacy_col}{from_clause} ORDER BY {legacy_col} LIMIT :limit"),
                    {"limit": int(limit)},
                )
            ]
        return total, sample

    def read_columns(
        self, entity: EntityDefinition, columns: Sequence[str], chunksize: int = 10000
    ) -> Iterator[pd.DataFrame]:
        """Stream selected target columns as DataFrame chunks."""
        select_list = ", ".join(
            quote_ident(c) for c in dict.fromkeys([entity.target_legacy_field, *columns])
        )
        sql = (
            f"SELECT {select_list} FROM {quote_table(entity.target_table)}"
            f" ORDER BY {quote_ident(entity.target_legacy_field)}"
        )
        with self.engine.connect() as conn:
            for chunk in pd.read_sql_query(sa.text(sql), conn, chunksize=chunksize):
                yield chunk
