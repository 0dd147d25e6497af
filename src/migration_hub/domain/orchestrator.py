"""
Migration orchestrator.

Drives one run end to end:

1. build the execution plan (configuration errors are fatal and happen
   before any store is touched)
2. record the run and register a pending checkpoint per entity
3. walk the levels in order; inside a level, entities run concurrently on
   a bounded thread pool, each with its own sequential batch loop
4. validate the migrated entities
5. finalize the run summary and exit signal

Failures stay with the entity that failed. Its transitive dependents are
marked skipped with the reason recorded, and sibling branches of the graph
carry on. Re-invoking with the same run id resumes every unfinished entity
from its last committed cursor.
"""

import json
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from migration_hub.config.settings import Settings, get_settings
from migration_hub.domain.checkpoints import CheckpointManager, NullCheckpointManager
from migration_hub.domain.conflicts import ConflictResolver
from migration_hub.domain.dependency_graph import ExecutionPlan, build_execution_plan
from migration_hub.domain.differential import DifferentialAnalyzer
from migration_hub.domain.errors import ConfigurationError, classify_error
from migration_hub.domain.executor import BatchExecutor, EntityProgress
from migration_hub.domain.models import EntityDefinition, RunOptions
from migration_hub.domain.results import (
    CheckpointStatus,
    ConflictRecord,
    EntityOutcome,
    EntityStatus,
    ExitSignal,
    RunStatus,
    RunSummary,
)
from migration_hub.domain.validation import ValidationFramework
from migration_hub.io.connections import build_engine
from migration_hub.io.connectors import SqlSourceReader, TargetStore
from migration_hub.io.repositories import (
    CheckpointRepository,
    ConflictRepository,
    MappingRepository,
    RunRepository,
)
from migration_hub.io.retry import RetryPolicy, with_retry
from migration_hub.io.schema import ensure_control_tables, mappings_table
from migration_hub.utils.logging import MigrationAuditLogger, get_logger

logger = get_logger(__name__)

_BLOCKING_STATUSES = (EntityStatus.FAILED, EntityStatus.CANCELLED)


class _UnmappedStore:
    """Stand-in mapping view for dry runs against a target without control tables."""

    def count(self, entity_type: str) -> int:
        return 0

    def iter_mapped(self, entity_type: str) -> Iterator[Tuple[int, str]]:
        return iter(())


class MigrationOrchestrator:
    """
    Runs migrations for a set of entity definitions.

    Args:
        definitions: Every known entity definition
        source: SourceReader over the legacy store
        target_engine: Engine for the target store (also hosts control tables)
        options: Per-run knobs; defaults to RunOptions()
        checkpoint_manager: Override the durable checkpoint manager

    Example:
        >>> orchestrator = MigrationOrchestrator(definitions, SqlSourceReader(src), tgt)
        >>> summary = orchestrator.run(run_id="nightly-2024-01-01")
        >>> summary.exit_signal
        <ExitSignal.SUCCESS: 'success'>
    """

    def __init__(
        self,
        definitions: Sequence[EntityDefinition],
        source,
        target_engine: Engine,
        options: Optional[RunOptions] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        audit: Optional[MigrationAuditLogger] = None,
        sleep=time.sleep,
    ):
        self.definitions = list(definitions)
        self.by_name = {d.name: d for d in self.definitions}
        self.source = source
        self.target_engine = target_engine
        self.options = options or RunOptions()
        self.retry_policy = RetryPolicy(
            max_attempts=self.options.retry_max_attempts,
            backoff_ms=self.options.retry_backoff_ms,
        )
        self._sleep = sleep

        self.mappings = MappingRepository(target_engine)
        self.target_store = TargetStore(target_engine)
        self.runs = RunRepository(target_engine)
        self.conflicts = ConflictRepository(target_engine)
        self.checkpoints = checkpoint_manager or CheckpointManager(
            CheckpointRepository(target_engine)
        )
        self.executor = BatchExecutor(
            self.target_store,
            self.mappings,
            ConflictResolver.from_options(self.options),
            retry_policy=self.retry_policy,
            audit=audit,
            conflict_repository=self.conflicts,
            sleep=sleep,
        )
        self.validator = ValidationFramework(
            source, self.target_store, self.mappings, self.options
        )

    @classmethod
    def from_settings(
        cls,
        definitions: Sequence[EntityDefinition],
        settings: Optional[Settings] = None,
        **overrides,
    ) -> "MigrationOrchestrator":
        """Build engines, source reader and options from Settings."""
        settings = settings or get_settings()
        options = RunOptions.from_settings(settings, **overrides)
        retry_policy = RetryPolicy(options.retry_max_attempts, options.retry_backoff_ms)
        source_engine = build_engine(
            settings.source_database_uri, settings.operation_timeout_seconds
        )
        target_engine = build_engine(
            settings.target_database_uri, settings.operation_timeout_seconds
        )
        return cls(
            definitions,
            SqlSourceReader(source_engine, retry_policy),
            target_engine,
            options=options,
        )

    # -- helpers ------------------------------------------------------------

    def _analyzer(self, mappings) -> DifferentialAnalyzer:
        return DifferentialAnalyzer(
            self.source,
            mappings,
            batch_size_for=self.options.batch_size_for,
            massive_threshold=self.options.massive_threshold,
        )

    @staticmethod
    def _finish_summary(summary: RunSummary, status: RunStatus, signal: ExitSignal) -> RunSummary:
        summary.status = status
        summary.exit_signal = signal
        summary.finished_at = datetime.now(timezone.utc)
        return summary

    @staticmethod
    def _block_dependents(
        level: Sequence[str],
        plan: ExecutionPlan,
        summary: RunSummary,
        blocked: Dict[str, List[str]],
    ) -> None:
        """Record the root cause against every transitive dependent of a failed entity."""
        for name in level:
            status = summary.entities[name].status
            if status not in _BLOCKING_STATUSES:
                continue
            for dependent in sorted(plan.dependents_of(name)):
                blocked.setdefault(dependent, []).append(f"dependency '{name}' {status.value}")

    def _run_entity(
        self,
        entity: EntityDefinition,
        outcome: EntityOutcome,
        run_id: str,
        checkpoints: CheckpointManager,
        analyzer: DifferentialAnalyzer,
        dry_run: bool,
        cancel_event: threading.Event,
    ) -> List[ConflictRecord]:
        log = logger.bind(run_id=run_id, entity=entity.name)
        started = time.monotonic()
        progress = EntityProgress()
        log.info("orchestrator.entity.started", level=outcome.level, dry_run=dry_run)
        try:
            if dry_run:
                checkpoints.begin(run_id, entity.name)
                outcome.delta = analyzer.summarize(entity)
                checkpoints.complete(run_id, entity.name)
                outcome.status = EntityStatus.COMPLETED
            else:
                self.executor.migrate_entity(
                    entity, analyzer, checkpoints, run_id, cancel_event, progress=progress
                )
                if progress.cancelled:
                    outcome.status = EntityStatus.CANCELLED
                    outcome.reason = f"cancelled after cursor {progress.cursor}"
                else:
                    outcome.status = EntityStatus.COMPLETED
        except Exception as e:
            kind = classify_error(e)
            outcome.status = EntityStatus.FAILED
            outcome.reason = f"{kind.value}: {e}"
            log.error("orchestrator.entity.failed", kind=kind.value, error=str(e))
            try:
                checkpoints.fail(run_id, entity.name, str(e))
            except Exception as checkpoint_error:
                # The entity is already failed; the checkpoint keeps its last committed cursor
                log.warning(
                    "orchestrator.checkpoint.fail_not_recorded", error=str(checkpoint_error)
                )
        if not dry_run:
            # Batches committed before a failure still count
            outcome.absorb(progress.result)
            outcome.batches = progress.batches
            outcome.delta = progress.delta
        outcome.duration_seconds = round(time.monotonic() - started, 3)
        log.info(
            "orchestrator.entity.finished",
            status=outcome.status.value,
            inserted=outcome.inserted,
            updated=outcome.updated,
            skipped=outcome.skipped,
            failed=outcome.failed,
            duration_seconds=outcome.duration_seconds,
        )
        return progress.result.conflicts

    # -- main entry point ---------------------------------------------------

    def run(
        self,
        run_id: Optional[str] = None,
        entities: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
        validate: bool = True,
    ) -> RunSummary:
        """
        Execute (or resume) a run.

        Args:
            run_id: Run identity; reuse it to resume an interrupted run
            entities: Optional subset of entity names
            cancel_event: Set it to stop between batches
            validate: Run the validation framework after the last level

        Returns:
            RunSummary; ``exit_signal`` is fatal only for configuration errors
            or an unreachable control store
        """
        run_id = run_id or f"run-{datetime.now(timezone.utc):%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"
        cancel_event = cancel_event or threading.Event()
        dry_run = self.options.dry_run
        log = logger.bind(run_id=run_id)
        summary = RunSummary(
            run_id=run_id,
            status=RunStatus.RUNNING,
            exit_signal=ExitSignal.SUCCESS,
            dry_run=dry_run,
            started_at=datetime.now(timezone.utc),
        )

        try:
            plan = build_execution_plan(self.definitions, entities)
        except ConfigurationError as e:
            log.error("orchestrator.run.configuration_error", error=str(e))
            summary.error = str(e)
            return self._finish_summary(summary, RunStatus.FATAL, ExitSignal.FATAL)

        summary.levels = plan.levels
        for index, level in enumerate(plan.levels):
            for name in level:
                summary.entities[name] = EntityOutcome(entity=name, level=index)
        log.info("orchestrator.run.started", levels=plan.levels, dry_run=dry_run)

        checkpoints = self.checkpoints
        mappings = self.mappings
        try:
            if dry_run:
                checkpoints = NullCheckpointManager()
                if not sa.inspect(self.target_engine).has_table(mappings_table.name):
                    mappings = _UnmappedStore()
            else:
                with_retry(
                    lambda: ensure_control_tables(self.target_engine),
                    self.retry_policy,
                    "control_tables.ensure",
                    sleep=self._sleep,
                )
                self.runs.start(run_id, plan.levels, dry_run)
            existing = checkpoints.list_for_run(run_id)
            for name in plan.order:
                checkpoints.register(run_id, name)
        except Exception as e:
            log.error("orchestrator.run.control_store_unavailable", error=str(e))
            summary.error = f"{classify_error(e).value}: {e}"
            return self._finish_summary(summary, RunStatus.FATAL, ExitSignal.FATAL)

        analyzer = self._analyzer(mappings)
        blocked: Dict[str, List[str]] = {}
        for index, level in enumerate(plan.levels):
            runnable: List[str] = []
            for name in level:
                outcome = summary.entities[name]
                if cancel_event.is_set():
                    outcome.reason = "run cancelled before entity started"
                    continue
                if name in blocked:
                    reason = "; ".join(blocked[name])
                    outcome.status = EntityStatus.SKIPPED
                    outcome.reason = reason
                    log.warning("orchestrator.entity.skipped", entity=name, reason=reason)
                    continue
                previous = existing.get(name)
                if previous is not None and previous.status == CheckpointStatus.COMPLETED:
                    outcome.status = EntityStatus.COMPLETED
                    outcome.reason = "completed in an earlier invocation"
                    outcome.batches = previous.batches_committed
                    continue
                runnable.append(name)

            if not runnable:
                continue

            log.info("orchestrator.level.started", level=index, entities=runnable)
            workers = max(1, min(self.options.max_workers, len(runnable)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="migration") as pool:
                futures = {
                    pool.submit(
                        self._run_entity,
                        self.by_name[name],
                        summary.entities[name],
                        run_id,
                        checkpoints,
                        analyzer,
                        dry_run,
                        cancel_event,
                    ): name
                    for name in runnable
                }
                for future in as_completed(futures):
                    summary.conflicts.extend(future.result())
            log.info(
                "orchestrator.level.completed",
                level=index,
                statuses={n: summary.entities[n].status.value for n in runnable},
            )
            self._block_dependents(level, plan, summary, blocked)

        cancelled = cancel_event.is_set()
        if validate and not dry_run and not cancelled:
            completed = summary.entities_with_status(EntityStatus.COMPLETED)
            summary.validation = self.validator.validate(self.definitions, completed)

        unfinished = [
            name
            for name, outcome in summary.entities.items()
            if outcome.status != EntityStatus.COMPLETED
        ]
        if cancelled and unfinished:
            status, signal = RunStatus.CANCELLED, ExitSignal.PARTIAL_SUCCESS
        elif unfinished:
            status, signal = RunStatus.PARTIAL, ExitSignal.PARTIAL_SUCCESS
        else:
            status, signal = RunStatus.COMPLETED, ExitSignal.SUCCESS
        self._finish_summary(summary, status, signal)

        if not dry_run:
            payload = json.loads(json.dumps(summary.to_dict(), default=str))
            try:
                self.runs.finish(run_id, status.value, payload)
            except Exception as e:
                log.error("orchestrator.run.history_not_recorded", error=str(e))

        log.info(
            "orchestrator.run.completed",
            status=status.value,
            exit_signal=signal.value,
            completed=summary.entities_with_status(EntityStatus.COMPLETED),
            failed=summary.entities_with_status(EntityStatus.FAILED),
            skipped=summary.entities_with_status(EntityStatus.SKIPPED),
            totals=summary.totals,
        )
        return summary
