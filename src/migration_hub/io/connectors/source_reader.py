"""
Read-only access to the legacy store.

The migration core only ever issues bounded SELECTs against the legacy
schema: keyset-paginated pages ordered by the entity's legacy id column,
lookups by id for sampling, and counts for parity checks.
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from migration_hub.domain.models import EntityDefinition
from migration_hub.io.retry import RetryPolicy, with_retry
from migration_hub.io.sql_utils import quote_ident, quote_table
from migration_hub.io.upsert import chunked
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)

Row = Dict[str, Any]


class SourceReader(Protocol):
    """Protocol for legacy store readers."""

    def fetch_page(
        self, entity: EntityDefinition, after: Optional[int], limit: int
    ) -> List[Row]:
        ...

    def fetch_by_ids(self, entity: EntityDefinition, ids: Iterable[int]) -> List[Row]:
        ...

    def count(self, entity: EntityDefinition) -> int:
        ...


class SqlSourceReader:
    """
    SourceReader over a SQLAlchemy engine.

    Args:
        engine: Engine bound to the legacy store
        retry_policy: Backoff for transient connectivity errors
    """

    LOOKUP_CHUNK_SIZE = 500

    def __init__(self, engine: Engine, retry_policy: Optional[RetryPolicy] = None):
        self.engine = engine
        self.retry_policy = retry_policy or RetryPolicy()

    @staticmethod
    def _where(entity: EntityDefinition, *clauses: str) -> str:
        parts = [c for c in clauses if c]
        if entity.source_filter:
            parts.append(f"({entity.source_filter})")
        return f" WHERE {' AND '.join(parts)}" if parts else ""

    def _select_rows(self, sql: str, params: Dict[str, Any], op_name: str, entity: str) -> List[Row]:
        def _run() -> List[Row]:
            with self.engine.connect() as conn:
                result = conn.execute(sa.text(sql), params)
                return [dict(row) for row in result.mappings()]

        return with_retry(_run, self.retry_policy, op_name, entity=entity)

    def fetch_page(
        self, entity: EntityDefinition, after: Optional[int], limit: int
    ) -> List[Row]:
        """Rows with legacy id strictly greater than ``after``, in id order."""
        id_col = quote_ident(entity.id_field)
        params: Dict[str, Any] = {"limit": int(limit)}
        cursor_clause = ""
        if after is not None:
            cursor_clause = f"{id_col} > :after"
            params["after"] = int(after)
        sql = (
            f"SELECT * FROM {quote_table(entity.source_table)}"
            f"{self._where(entity, cursor_clause)}"
            f" ORDER BY {id_col} LIMIT :limit"
        )
        return self._select_rows(sql, params, "source.fetch_page", entity.name)

    def fetch_by_ids(self, entity: EntityDefinition, ids: Iterable[int]) -> List[Row]:
        wanted = sorted({int(i) for i in ids})
        rows: List[Row] = []
        for chunk in chunked(wanted, self.LOOKUP_CHUNK_SIZE):
            stmt = sa.text(
                f"SELECT * FROM {quote_table(entity.source_table)}"
                f"{self._where(entity, f'{quote_ident(entity.id_field)} IN :ids')}"
                f" ORDER BY {quote_ident(entity.id_field)}"
            ).bindparams(sa.bindparam("ids", expanding=True))

            def _run(stmt=stmt, chunk=chunk) -> List[Row]:
                with self.engine.connect() as conn:
                    result = conn.execute(stmt, {"ids": list(chunk)})
                    return [dict(row) for row in result.mappings()]

            rows.extend(
                with_retry(_run, self.retry_policy, "source.fetch_by_ids", entity=entity.name)
            )
        return rows

    def count(self, entity: EntityDefinition) -> int:
        sql = f"SELECT COUNT(*) FROM {quote_table(entity.source_table)}{self._where(entity)}"

        def _run() -> int:
            with self.engine.connect() as conn:
                return int(conn.execute(sa.text(sql)).scalar() or 0)

        return with_retry(_run, self.retry_policy, "source.count", entity=entity.name)
