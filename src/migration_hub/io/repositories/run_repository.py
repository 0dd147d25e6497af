"""
Run history repository.

One row per run id in ``migration_runs``: status, the computed levels and
the final structured summary. Re-invoking a run id reuses its row so the
run remains a single auditable unit across resumes.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from migration_hub.io.schema import runs_table
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)


class RunRepository:
    """Repository for ``migration_runs``."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(runs_table).where(runs_table.c.run_id == run_id)
            ).mappings().fetchone()
        return dict(row) if row is not None else None

    def start(self, run_id: str, levels: List[List[str]], dry_run: bool) -> bool:
        """
        Record the start of a run.

        Returns:
            True when this run id already existed (the invocation is a resume)
        """
        now = datetime.now(timezone.utc)
        with self.engine.begin() as conn:
            existing = conn.execute(
                sa.select(runs_table.c.run_id).where(runs_table.c.run_id == run_id)
            ).fetchone()
            if existing is None:
                conn.execute(
                    runs_table.insert().values(
                        run_id=run_id,
                        status="running",
                        dry_run=dry_run,
                        levels=levels,
                        started_at=now,
                    )
                )
            else:
                conn.execute(
                    runs_table.update()
                    .where(runs_table.c.run_id == run_id)
                    .values(status="running", levels=levels, finished_at=None)
                )
        logger.info("run.started", run_id=run_id, resumed=existing is not None)
        return existing is not None

    def finish(self, run_id: str, status: str, summary: Dict[str, Any]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                runs_table.update()
                .where(runs_table.c.run_id == run_id)
                .values(
                    status=status,
                    summary=summary,
                    finished_at=datetime.now(timezone.utc),
                )
            )
        logger.info("run.finished", run_id=run_id, status=status)
