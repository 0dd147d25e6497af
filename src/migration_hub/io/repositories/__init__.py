"""Repositories over the migration control tables."""

from migration_hub.io.repositories.checkpoint_repository import CheckpointRepository
from migration_hub.io.repositories.conflict_repository import ConflictRepository
from migration_hub.io.repositories.mapping_repository import MappingRepository
from migration_hub.io.repositories.run_repository import RunRepository

__all__ = [
    "CheckpointRepository",
    "ConflictRepository",
    "MappingRepository",
    "RunRepository",
]
