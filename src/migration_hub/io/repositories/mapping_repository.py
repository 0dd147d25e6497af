"""
Legacy-ID mapping store.

A durable table mapping (entity_type, legacy_id) to the newly assigned
identifier, plus the content hash of the last migrated source row. The
Batch Executor is the only writer (through ``upsert`` and ``refresh_hash``
on its own transaction); every other component only reads. Rows are never
deleted here.

Usage:
    repo = MappingRepository(engine)

    # Resolve foreign references for a batch
    resolved = repo.resolve("offices", [1, 2, 999])   # {1: "...", 2: "..."}

    # Stream every mapped id for the anti-join
    for legacy_id, content_hash in repo.iter_mapped("offices"):
        ...
"""

import random
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from migration_hub.domain.results import MappingRecord
from migration_hub.io.schema import mappings_table
from migration_hub.io.upsert import chunked, upsert_row
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)

# Bound the IN (...) list size; SQLite caps bound parameters
LOOKUP_CHUNK_SIZE = 500


class MappingRepository:
    """Repository over the ``migration_mappings`` control table."""

    def __init__(self, engine: Engine, stream_chunk_size: int = 10000):
        self.engine = engine
        self.stream_chunk_size = stream_chunk_size

    # -- reads -----------------------------------------------------------

    def iter_mapped(self, entity_type: str) -> Iterator[Tuple[int, str]]:
        """
        Stream (legacy_id, content_hash) for an entity in legacy-id order.

        A single indexed scan on the primary key, fetched in chunks so the
        driver never materializes the whole result.
        """
        stmt = (
            sa.select(mappings_table.c.legacy_id, mappings_table.c.content_hash)
            .where(mappings_table.c.entity_type == entity_type)
            .order_by(mappings_table.c.legacy_id)
        )
        with self.engine.connect() as conn:
            result = conn.execution_options(stream_results=True).execute(stmt)
            while True:
                rows = result.fetchmany(self.stream_chunk_size)
                if not rows:
                    break
                for row in rows:
                    yield int(row[0]), row[1]

    def resolve(self, entity_type: str, legacy_ids: Iterable[int]) -> Dict[int, str]:
        """Look up new ids for a set of legacy ids; unknown ids are absent."""
        ids = sorted({int(i) for i in legacy_ids if i is not None})
        resolved: Dict[int, str] = {}
        if not ids:
            return resolved
        with self.engine.connect() as conn:
            for chunk in chunked(ids, LOOKUP_CHUNK_SIZE):
                rows = conn.execute(
                    sa.select(mappings_table.c.legacy_id, mappings_table.c.new_id).where(
                        mappings_table.c.entity_type == entity_type,
                        mappings_table.c.legacy_id.in_(list(chunk)),
                    )
                ).fetchall()
                resolved.update({int(r[0]): r[1] for r in rows})
        return resolved

    def get(self, entity_type: str, legacy_id: int) -> Optional[MappingRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(mappings_table).where(
                    mappings_table.c.entity_type == entity_type,
                    mappings_table.c.legacy_id == legacy_id,
                )
            ).mappings().fetchone()
        if row is None:
            return None
        return MappingRecord(
            entity_type=row["entity_type"],
            legacy_id=int(row["legacy_id"]),
            new_id=row["new_id"],
            content_hash=row["content_hash"],
            last_synced_at=row["last_synced_at"],
        )

    def count(self, entity_type: str) -> int:
        with self.engine.connect() as conn:
            return int(
                conn.execute(
                    sa.select(sa.func.count()).select_from(mappings_table).where(
                        mappings_table.c.entity_type == entity_type
                    )
                ).scalar()
                or 0
            )

    def sample_ids(self, entity_type: str, size: int, seed: int) -> List[int]:
        """
        Deterministic random sample of mapped legacy ids.

        Reservoir sampling over the streamed ids, so at most ``size`` ids are
        held in memory. The RNG is seeded: repeated validations of the same
        data pick the same rows.
        """
        rng = random.Random(seed)
        reservoir: List[int] = []
        for seen, (legacy_id, _) in enumerate(self.iter_mapped(entity_type)):
            if seen < size:
                reservoir.append(legacy_id)
                continue
            slot = rng.randint(0, seen)
            if slot < size:
                reservoir[slot] = legacy_id
        return sorted(reservoir)

    # -- writes (Batch Executor only) ------------------------------------

    def upsert(self, conn: Connection, record: MappingRecord) -> None:
        """Insert or update a mapping row inside the caller's transaction."""
        upsert_row(
            conn,
            mappings_table,
            {
                "entity_type": record.entity_type,
                "legacy_id": record.legacy_id,
                "new_id": record.new_id,
                "content_hash": record.content_hash,
                "last_synced_at": record.last_synced_at or datetime.now(timezone.utc),
            },
            conflict_columns=["entity_type", "legacy_id"],
            update_columns=["new_id", "content_hash", "last_synced_at"],
        )

    def refresh_hash(
        self, conn: Connection, entity_type: str, legacy_id: int, content_hash: str
    ) -> None:
        """Store a new content hash without touching the target row."""
        conn.execute(
            mappings_table.update()
            .where(
                mappings_table.c.entity_type == entity_type,
                mappings_table.c.legacy_id == legacy_id,
            )
            .values(content_hash=content_hash, last_synced_at=datetime.now(timezone.utc))
        )
