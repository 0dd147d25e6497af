"""
Checkpoint manager.

Per (run, entity) state machine:

    pending -> in_progress -> completed
                           -> failed -> in_progress (resume)

``advance`` is only called after a batch has committed, so the persisted
cursor can never run ahead of committed data. A resumed entity restarts
its scan strictly after that cursor.
"""

import copy
from typing import Dict, Optional

from migration_hub.domain.errors import InvalidCheckpointTransition
from migration_hub.domain.results import BatchResult, Checkpoint, CheckpointStatus
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)

_ALLOWED_TRANSITIONS = {
    CheckpointStatus.PENDING: {CheckpointStatus.IN_PROGRESS},
    # in_progress -> in_progress covers a crashed invocation being resumed
    CheckpointStatus.IN_PROGRESS: {
        CheckpointStatus.IN_PROGRESS,
        CheckpointStatus.COMPLETED,
        CheckpointStatus.FAILED,
    },
    CheckpointStatus.FAILED: {CheckpointStatus.IN_PROGRESS},
    CheckpointStatus.COMPLETED: set(),
}


class CheckpointManager:
    """
    Durable checkpoint state machine on top of a checkpoint repository.

    Args:
        repository: Object exposing ``get``, ``list_for_run`` and ``save``
            (normally CheckpointRepository)
    """

    def __init__(self, repository):
        self.repository = repository

    def _require(self, run_id: str, entity_name: str) -> Checkpoint:
        checkpoint = self.repository.get(run_id, entity_name)
        if checkpoint is None:
            raise InvalidCheckpointTransition(
                f"No checkpoint registered for run '{run_id}' entity '{entity_name}'",
                entity=entity_name,
            )
        return checkpoint

    @staticmethod
    def _transition(checkpoint: Checkpoint, target: CheckpointStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[checkpoint.status]:
            raise InvalidCheckpointTransition(
                f"Illegal checkpoint transition {checkpoint.status.value} -> {target.value} "
                f"for entity '{checkpoint.entity_name}'",
                entity=checkpoint.entity_name,
            )
        checkpoint.status = target

    def register(self, run_id: str, entity_name: str) -> Checkpoint:
        """Create a pending checkpoint; existing checkpoints are returned untouched."""
        existing = self.repository.get(run_id, entity_name)
        if existing is not None:
            return existing
        return self.repository.save(Checkpoint(run_id=run_id, entity_name=entity_name))

    def begin(self, run_id: str, entity_name: str) -> Checkpoint:
        """Move to in_progress and return the checkpoint holding the resume cursor."""
        checkpoint = self.register(run_id, entity_name)
        resumed = checkpoint.status != CheckpointStatus.PENDING
        self._transition(checkpoint, CheckpointStatus.IN_PROGRESS)
        checkpoint.error = None
        self.repository.save(checkpoint)
        logger.info(
            "checkpoint.begun",
            run_id=run_id,
            entity=entity_name,
            resumed=resumed,
            cursor=checkpoint.cursor,
        )
        return checkpoint

    def advance(
        self, run_id: str, entity_name: str, cursor: Optional[int], batch: BatchResult
    ) -> Checkpoint:
        """Record a committed batch. The cursor only moves forward."""
        checkpoint = self._require(run_id, entity_name)
        if checkpoint.status != CheckpointStatus.IN_PROGRESS:
            raise InvalidCheckpointTransition(
                f"Cannot advance checkpoint in status {checkpoint.status.value}",
                entity=entity_name,
            )
        if cursor is not None:
            if checkpoint.cursor is not None and cursor < checkpoint.cursor:
                raise InvalidCheckpointTransition(
                    f"Cursor for '{entity_name}' cannot move backwards "
                    f"({checkpoint.cursor} -> {cursor})",
                    entity=entity_name,
                )
            checkpoint.cursor = cursor
        checkpoint.processed += batch.processed
        checkpoint.succeeded += batch.succeeded
        checkpoint.failed += batch.failed
        checkpoint.skipped += batch.skipped
        checkpoint.batches_committed += 1
        self.repository.save(checkpoint)
        logger.debug(
            "checkpoint.advanced",
            run_id=run_id,
            entity=entity_name,
            cursor=checkpoint.cursor,
            batches_committed=checkpoint.batches_committed,
        )
        return checkpoint

    def complete(self, run_id: str, entity_name: str) -> Checkpoint:
        checkpoint = self._require(run_id, entity_name)
        self._transition(checkpoint, CheckpointStatus.COMPLETED)
        self.repository.save(checkpoint)
        logger.info(
            "checkpoint.completed",
            run_id=run_id,
            entity=entity_name,
            processed=checkpoint.processed,
        )
        return checkpoint

    def fail(self, run_id: str, entity_name: str, error: str) -> Checkpoint:
        checkpoint = self._require(run_id, entity_name)
        self._transition(checkpoint, CheckpointStatus.FAILED)
        checkpoint.error = error
        self.repository.save(checkpoint)
        logger.warning("checkpoint.failed", run_id=run_id, entity=entity_name, error=error)
        return checkpoint

    def get(self, run_id: str, entity_name: str) -> Optional[Checkpoint]:
        return self.repository.get(run_id, entity_name)

    def list_for_run(self, run_id: str) -> Dict[str, Checkpoint]:
        return self.repository.list_for_run(run_id)


class _InMemoryCheckpointStore:
    def __init__(self):
        self._items: Dict[tuple, Checkpoint] = {}

    def get(self, run_id: str, entity_name: str) -> Optional[Checkpoint]:
        found = self._items.get((run_id, entity_name))
        return copy.copy(found) if found is not None else None

    def list_for_run(self, run_id: str) -> Dict[str, Checkpoint]:
        return {
            name: copy.copy(cp) for (rid, name), cp in self._items.items() if rid == run_id
        }

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        self._items[(checkpoint.run_id, checkpoint.entity_name)] = copy.copy(checkpoint)
        return checkpoint


class NullCheckpointManager(CheckpointManager):
    """Same state machine, kept in memory; used by dry runs."""

    def __init__(self):
        super().__init__(_InMemoryCheckpointStore())
