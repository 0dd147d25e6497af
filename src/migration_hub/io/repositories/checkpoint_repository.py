"""
Checkpoint repository for resumable migrations.

Persists, per (run_id, entity_name), the last committed cursor, the row
counters and the status. The checkpoint of an interrupted run is the resume
point of the next invocation with the same run id.
"""

from datetime import datetime, timezone
from typing import Dict, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from migration_hub.domain.results import Checkpoint, CheckpointStatus
from migration_hub.io.schema import checkpoints_table
from migration_hub.io.upsert import upsert_row
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)


def _row_to_checkpoint(row) -> Checkpoint:
    return Checkpoint(
        run_id=row["run_id"],
        entity_name=row["entity_name"],
        status=CheckpointStatus(row["status"]),
        cursor=int(row["cursor"]) if row["cursor"] is not None else None,
        processed=row["processed"],
        succeeded=row["succeeded"],
        failed=row["failed"],
        skipped=row["skipped"],
        batches_committed=row["batches_committed"],
        error=row["error"],
        updated_at=row["updated_at"],
    )


class CheckpointRepository:
    """
    Repository for ``migration_checkpoints``.

    Usage:
        repo = CheckpointRepository(engine)
        repo.save(Checkpoint(run_id="r1", entity_name="offices"))
        checkpoint = repo.get("r1", "offices")
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, run_id: str, entity_name: str) -> Optional[Checkpoint]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(checkpoints_table).where(
                    checkpoints_table.c.run_id == run_id,
                    checkpoints_table.c.entity_name == entity_name,
                )
            ).mappings().fetchone()
        return _row_to_checkpoint(row) if row is not None else None

    def list_for_run(self, run_id: str) -> Dict[str, Checkpoint]:
        """All checkpoints of a run keyed by entity name."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(checkpoints_table).where(checkpoints_table.c.run_id == run_id)
            ).mappings().fetchall()
        return {row["entity_name"]: _row_to_checkpoint(row) for row in rows}

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        """Durably write the checkpoint (insert or full update) and commit."""
        checkpoint.updated_at = datetime.now(timezone.utc)
        values = {
            "run_id": checkpoint.run_id,
            "entity_name": checkpoint.entity_name,
            "status": checkpoint.status.value,
            "cursor": checkpoint.cursor,
            "processed": checkpoint.processed,
            "succeeded": checkpoint.succeeded,
            "failed": checkpoint.failed,
            "skipped": checkpoint.skipped,
            "batches_committed": checkpoint.batches_committed,
            "error": checkpoint.error,
            "updated_at": checkpoint.updated_at,
        }
        with self.engine.begin() as conn:
            upsert_row(
                conn,
                checkpoints_table,
                values,
                conflict_columns=["run_id", "entity_name"],
                update_columns=[k for k in values if k not in ("run_id", "entity_name")],
            )
        logger.debug(
            "checkpoint.saved",
            run_id=checkpoint.run_id,
            entity=checkpoint.entity_name,
            status=checkpoint.status.value,
            cursor=checkpoint.cursor,
        )
        return checkpoint
