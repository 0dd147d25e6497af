"""
Result types produced by the migration core.

These are the structured audit output of a run: a reporting collaborator
consumes ``RunSummary.to_dict()``; the core never formats text reports.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class CheckpointStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class EntityStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    NOT_STARTED = "not_started"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    FATAL = "fatal"


class ExitSignal(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FATAL = "fatal"


class CheckType(str, Enum):
    COUNT_PARITY = "count_parity"
    REFERENTIAL_INTEGRITY = "referential_integrity"
    FORMAT = "format"
    SAMPLE_STATISTICAL = "sample_statistical"


@dataclass
class MappingRecord:
    """(entity_type, legacy_id) -> new_id with the last migrated content hash."""

    entity_type: str
    legacy_id: int
    new_id: str
    content_hash: str
    last_synced_at: Optional[datetime] = None


@dataclass
class Checkpoint:
    """Durable progress marker for one entity within one run."""

    run_id: str
    entity_name: str
    status: CheckpointStatus = CheckpointStatus.PENDING
    cursor: Optional[int] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    batches_committed: int = 0
    error: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class ConflictRecord:
    """A record present on both sides whose content diverged."""

    entity_type: str
    legacy_id: int
    old_values: Dict[str, Any]
    new_values: Dict[str, Any]
    strategy: str
    outcome: str
    changed_fields: List[str] = field(default_factory=list)
    # Operator decision that settled a manual conflict
    decision: Optional[str] = None


@dataclass
class SkippedRow:
    legacy_id: int
    reason: str


@dataclass
class FailedRow:
    legacy_id: int
    kind: str
    error: str


@dataclass
class BatchResult:
    """Outcome of migrating one batch of source rows."""

    inserted: int = 0
    updated: int = 0
    kept: int = 0
    skipped: int = 0
    failed: int = 0
    skipped_rows: List[SkippedRow] = field(default_factory=list)
    failed_rows: List[FailedRow] = field(default_factory=list)
    conflicts: List[ConflictRecord] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.kept + self.skipped + self.failed

    @property
    def succeeded(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: "BatchResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.kept += other.kept
        self.skipped += other.skipped
        self.failed += other.failed
        self.skipped_rows.extend(other.skipped_rows)
        self.failed_rows.extend(other.failed_rows)
        self.conflicts.extend(other.conflicts)


@dataclass
class DeltaSummary:
    """Counts produced by the differential analyzer (dry-run report)."""

    entity: str
    source_rows: int = 0
    missing: int = 0
    conflicts: int = 0
    unchanged: int = 0


@dataclass
class ValidationResult:
    """One independent, individually reportable validation check."""

    entity: str
    check_type: CheckType
    expected: Any
    actual: Any
    passed: bool
    severity: str = "error"
    offending_keys: List[Any] = field(default_factory=list)
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EntityOutcome:
    """Per-entity line of the run summary."""

    entity: str
    level: int
    status: EntityStatus = EntityStatus.NOT_STARTED
    reason: Optional[str] = None
    inserted: int = 0
    updated: int = 0
    kept: int = 0
    skipped: int = 0
    failed: int = 0
    batches: int = 0
    duration_seconds: float = 0.0
    delta: Optional[DeltaSummary] = None
    skipped_rows: List[SkippedRow] = field(default_factory=list)
    failed_rows: List[FailedRow] = field(default_factory=list)

    def absorb(self, batch: BatchResult) -> None:
        self.inserted += batch.inserted
        self.updated += batch.updated
        self.kept += batch.kept
        self.skipped += batch.skipped
        self.failed += batch.failed
        self.batches += 1
        self.skipped_rows.extend(batch.skipped_rows)
        self.failed_rows.extend(batch.failed_rows)


@dataclass
class RunSummary:
    """Top-level aggregate returned by the orchestrator."""

    run_id: str
    status: RunStatus
    exit_signal: ExitSignal
    dry_run: bool = False
    levels: List[List[str]] = field(default_factory=list)
    entities: Dict[str, EntityOutcome] = field(default_factory=dict)
    conflicts: List[ConflictRecord] = field(default_factory=list)
    validation: List[ValidationResult] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def entities_with_status(self, status: EntityStatus) -> List[str]:
        return sorted(name for name, o in self.entities.items() if o.status == status)

    @property
    def totals(self) -> Dict[str, int]:
        return {
            "inserted": sum(o.inserted for o in self.entities.values()),
            "updated": sum(o.updated for o in self.entities.values()),
            "kept": sum(o.kept for o in self.entities.values()),
            "skipped": sum(o.skipped for o in self.entities.values()),
            "failed": sum(o.failed for o in self.entities.values()),
            "conflicts": len(self.conflicts),
            "validation_failures": sum(1 for v in self.validation if not v.passed),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["totals"] = self.totals
        return data
