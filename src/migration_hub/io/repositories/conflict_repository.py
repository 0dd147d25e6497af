"""
Conflict repository.

Conflict records normally live only in the run's audit log. They are
persisted here when an operator decision is required (manual strategy) or
when applying a resolution failed.

Lifecycle of a persisted conflict:

1. recorded as unresolved; later runs that hit the same record refresh it
   instead of adding another row
2. an operator calls ``decide`` with ``source_wins`` or ``target_wins``
3. the next run applies the decision and calls ``mark_resolved``
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from migration_hub.domain.models import ConflictStrategy
from migration_hub.domain.results import ConflictRecord
from migration_hub.io.schema import conflicts_table
from migration_hub.io.upsert import chunked, upsert_row

OPERATOR_DECISIONS = (ConflictStrategy.SOURCE_WINS.value, ConflictStrategy.TARGET_WINS.value)

_LOOKUP_CHUNK_SIZE = 500


def _unresolved(entity_type: str):
    return sa.and_(
        conflicts_table.c.entity_type == entity_type,
        conflicts_table.c.resolved.is_(False),
    )


class ConflictRepository:
    def __init__(self, engine: Engine):
        self.engine = engine

    def record(self, conflict: ConflictRecord, run_id: Optional[str] = None) -> None:
        values = {
            "run_id": run_id or "",
            "strategy": conflict.strategy,
            "outcome": conflict.outcome,
            "old_values": conflict.old_values,
            "new_values": conflict.new_values,
        }
        with self.engine.begin() as conn:
            # An open conflict keeps its row (and any operator decision)
            refreshed = conn.execute(
                conflicts_table.update()
                .where(
                    _unresolved(conflict.entity_type),
                    conflicts_table.c.legacy_id == conflict.legacy_id,
                )
                .values(**values)
            ).rowcount
            if refreshed:
                return
            upsert_row(
                conn,
                conflicts_table,
                {
                    **values,
                    "entity_type": conflict.entity_type,
                    "legacy_id": conflict.legacy_id,
                    "resolved": False,
                    "created_at": datetime.now(timezone.utc),
                },
                conflict_columns=["entity_type", "legacy_id", "run_id"],
                update_columns=["strategy", "outcome", "old_values", "new_values", "resolved"],
            )

    def list_pending(self, entity_type: Optional[str] = None) -> List[ConflictRecord]:
        """Unresolved conflicts, with the operator decision when one was made."""
        stmt = sa.select(conflicts_table).where(conflicts_table.c.resolved.is_(False))
        if entity_type is not None:
            stmt = stmt.where(conflicts_table.c.entity_type == entity_type)
        stmt = stmt.order_by(conflicts_table.c.entity_type, conflicts_table.c.legacy_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().fetchall()
        return [
            ConflictRecord(
                entity_type=row["entity_type"],
                legacy_id=int(row["legacy_id"]),
                old_values=row["old_values"] or {},
                new_values=row["new_values"] or {},
                strategy=row["strategy"],
                outcome=row["outcome"],
                decision=row["decision"],
            )
            for row in rows
        ]

    def pending_decisions(
        self, entity_type: str, legacy_ids: Iterable[int]
    ) -> Dict[int, Optional[str]]:
        """Map each open conflict among ``legacy_ids`` to its decision (None if undecided)."""
        ids = sorted({int(i) for i in legacy_ids})
        found: Dict[int, Optional[str]] = {}
        with self.engine.connect() as conn:
            for chunk in chunked(ids, _LOOKUP_CHUNK_SIZE):
                rows = conn.execute(
                    sa.select(conflicts_table.c.legacy_id, conflicts_table.c.decision).where(
                        _unresolved(entity_type),
                        conflicts_table.c.legacy_id.in_(list(chunk)),
                    )
                ).fetchall()
                for legacy_id, decision in rows:
                    found[int(legacy_id)] = found.get(int(legacy_id)) or decision
        return found

    def decide(self, entity_type: str, legacy_id: int, decision: str) -> int:
        """
        Record an operator decision on an open conflict.

        Returns:
            Number of open conflict rows updated (0 when nothing is pending)

        Raises:
            ValueError: decision is not source_wins or target_wins
        """
        if decision not in OPERATOR_DECISIONS:
            raise ValueError(
                f"Unknown conflict decision '{decision}'; expected one of {list(OPERATOR_DECISIONS)}"
            )
        with self.engine.begin() as conn:
            result = conn.execute(
                conflicts_table.update()
                .where(_unresolved(entity_type), conflicts_table.c.legacy_id == legacy_id)
                .values(decision=decision)
            )
        return result.rowcount

    def mark_resolved(self, entity_type: str, legacy_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                conflicts_table.update()
                .where(_unresolved(entity_type), conflicts_table.c.legacy_id == legacy_id)
                .values(resolved=True, resolved_at=datetime.now(timezone.utc))
            )
        return result.rowcount
