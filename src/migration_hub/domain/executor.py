"""
Batch executor.

Migrates one batch of source rows into the target store.

Commit policy: every row commits on its own transaction, and that
transaction covers both the target write and the mapping store write. A row
is therefore either fully migrated (target row + mapping) or not at all, and
one bad row never rolls back its neighbours. Row outcomes:

- required reference not yet mapped: skipped, with the missing dependency
  as the reason
- transform rejected the row, or the target reported a constraint
  violation: failed, with the error captured; the batch continues
- transient connectivity failure: retried with backoff; exhaustion raises
  ConnectivityError, which fails the entity

New identifiers are deterministic per (entity, legacy id), so replaying a
row after a crash updates the row it already wrote instead of inserting a
second one.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from sqlalchemy import exc as sa_exc

from migration_hub.domain.conflicts import ConflictOutcome, ConflictResolver, ResolutionAction
from migration_hub.domain.differential import ConflictCandidate, DifferentialAnalyzer
from migration_hub.domain.errors import (
    ConnectivityError,
    ConstraintViolationError,
    MigrationError,
    TransformError,
    UnresolvedReferenceError,
    classify_error,
)
from migration_hub.domain.models import EntityDefinition
from migration_hub.domain.results import (
    BatchResult,
    DeltaSummary,
    FailedRow,
    MappingRecord,
    SkippedRow,
)
from migration_hub.io.retry import RetryPolicy, with_retry
from migration_hub.utils.hashing import content_hash, new_identifier
from migration_hub.utils.logging import MigrationAuditLogger, get_logger

logger = get_logger(__name__)

MANUAL_SKIP_REASON = "conflict pending manual resolution"


def _as_legacy_id(value: Any) -> Optional[int]:
    """Coerce a reference value to a legacy id; None when it is not an integer."""
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class EntityProgress:
    """Aggregate of every batch migrated for one entity in one invocation."""

    result: BatchResult = field(default_factory=BatchResult)
    delta: Optional[DeltaSummary] = None
    batches: int = 0
    resumed_from: Optional[int] = None
    cursor: Optional[int] = None
    cancelled: bool = False


class BatchExecutor:
    """
    Row-level migration onto the target store.

    Args:
        target_store: TargetStore for the normalized schema
        mappings: MappingRepository (the executor is its only writer)
        resolver: ConflictResolver for rows present on both sides
        retry_policy: Backoff for connectivity errors
        audit: Audit logger for inserts, updates and conflicts
        conflict_repository: Where manual and failed conflicts are persisted
    """

    def __init__(
        self,
        target_store,
        mappings,
        resolver: ConflictResolver,
        retry_policy: Optional[RetryPolicy] = None,
        audit: Optional[MigrationAuditLogger] = None,
        conflict_repository=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.target_store = target_store
        self.mappings = mappings
        self.resolver = resolver
        self.retry_policy = retry_policy or RetryPolicy()
        self.audit = audit or MigrationAuditLogger()
        self.conflict_repository = conflict_repository
        self._sleep = sleep

    def _retry(self, operation, op_name: str, **context):
        return with_retry(operation, self.retry_policy, op_name, sleep=self._sleep, **context)

    # -- reference resolution --------------------------------------------

    def _resolve_references(
        self, entity: EntityDefinition, rows: Sequence[Mapping[str, Any]]
    ) -> Dict[str, Dict[int, str]]:
        """One batched mapping lookup per referenced entity."""
        wanted: Dict[str, set] = {}
        for ref in entity.references:
            ids = wanted.setdefault(ref.entity, set())
            for row in rows:
                ref_id = _as_legacy_id(row.get(ref.field))
                if ref_id is not None:
                    ids.add(ref_id)
        resolved: Dict[str, Dict[int, str]] = {}
        for referenced, ids in wanted.items():
            resolved[referenced] = self._retry(
                lambda referenced=referenced, ids=ids: self.mappings.resolve(referenced, ids),
                "mapping.resolve",
                entity=entity.name,
                referenced=referenced,
            )
        return resolved

    def _prepare(
        self,
        entity: EntityDefinition,
        row: Mapping[str, Any],
        resolved: Dict[str, Dict[int, str]],
    ) -> Dict[str, Any]:
        legacy_id = row[entity.id_field]
        reference_values: Dict[str, Any] = {}
        for ref in entity.references:
            value = row.get(ref.field)
            if value is None:
                if ref.required:
                    raise UnresolvedReferenceError(ref.display_label, "null", entity=entity.name)
                reference_values[ref.output_field] = None
                continue
            ref_id = _as_legacy_id(value)
            if ref_id is None:
                # Malformed legacy value; only this row is affected
                if ref.required:
                    raise UnresolvedReferenceError(ref.display_label, repr(value), entity=entity.name)
                reference_values[ref.output_field] = None
                continue
            new_id = resolved.get(ref.entity, {}).get(ref_id)
            if new_id is None and ref.entity == entity.name:
                # Self references may point at a row committed earlier in this batch
                new_id = self._retry(
                    lambda ref_id=ref_id: self.mappings.resolve(entity.name, [ref_id]),
                    "mapping.resolve",
                    entity=entity.name,
                ).get(ref_id)
                if new_id is not None:
                    resolved.setdefault(entity.name, {})[ref_id] = new_id
            if new_id is None:
                if ref.required:
                    raise UnresolvedReferenceError(ref.display_label, ref_id, entity=entity.name)
                logger.debug(
                    "executor.reference.nulled",
                    entity=entity.name,
                    legacy_id=legacy_id,
                    field=ref.field,
                    missing=ref_id,
                )
            reference_values[ref.output_field] = new_id

        try:
            values = entity.apply_transform(row)
        except MigrationError:
            raise
        except Exception as e:
            raise TransformError(
                f"Transform failed for {entity.name} legacy id {legacy_id}: {e}",
                entity=entity.name,
            ) from e
        values.update(reference_values)
        return values

    # -- writes -----------------------------------------------------------

    def _write_row(
        self,
        entity: EntityDefinition,
        legacy_id: int,
        values: Mapping[str, Any],
        digest: str,
    ) -> Tuple[str, str]:
        def _run() -> Tuple[str, str]:
            with self.target_store.engine.begin() as conn:
                existing_id = self.target_store.find_id_by_legacy(conn, entity, legacy_id)
                target_id = (
                    str(existing_id)
                    if existing_id is not None
                    else new_identifier(entity.name, legacy_id)
                )
                action = self.target_store.upsert(conn, entity, target_id, legacy_id, values)
                self.mappings.upsert(
                    conn,
                    MappingRecord(
                        entity_type=entity.name,
                        legacy_id=legacy_id,
                        new_id=target_id,
                        content_hash=digest,
                    ),
                )
            return action, target_id

        try:
            return self._retry(_run, "executor.write_row", entity=entity.name, legacy_id=legacy_id)
        except sa_exc.IntegrityError as e:
            raise ConstraintViolationError(
                f"{entity.name} legacy id {legacy_id} rejected by target: {e.orig}",
                entity=entity.name,
            ) from e

    def _refresh_hash(self, entity: EntityDefinition, legacy_id: int, digest: str) -> None:
        def _run() -> None:
            with self.target_store.engine.begin() as conn:
                self.mappings.refresh_hash(conn, entity.name, legacy_id, digest)

        self._retry(_run, "executor.refresh_hash", entity=entity.name, legacy_id=legacy_id)

    @staticmethod
    def _record_failure(
        result: BatchResult, entity: EntityDefinition, legacy_id: int, exc: BaseException
    ) -> None:
        kind = classify_error(exc)
        result.failed += 1
        result.failed_rows.append(FailedRow(legacy_id=legacy_id, kind=kind.value, error=str(exc)))
        logger.warning(
            "executor.row.failed",
            entity=entity.name,
            legacy_id=legacy_id,
            kind=kind.value,
            error=str(exc),
        )

    @staticmethod
    def _record_skip(
        result: BatchResult, entity: EntityDefinition, legacy_id: int, reason: str
    ) -> None:
        result.skipped += 1
        result.skipped_rows.append(SkippedRow(legacy_id=legacy_id, reason=reason))
        logger.info("executor.row.skipped", entity=entity.name, legacy_id=legacy_id, reason=reason)

    def _migrate_row(
        self,
        entity: EntityDefinition,
        row: Mapping[str, Any],
        resolved: Dict[str, Dict[int, str]],
        result: BatchResult,
        run_id: Optional[str],
    ) -> None:
        legacy_id = int(row[entity.id_field])
        try:
            values = self._prepare(entity, row, resolved)
            action, target_id = self._write_row(entity, legacy_id, values, content_hash(row))
        except UnresolvedReferenceError as e:
            self._record_skip(result, entity, legacy_id, str(e))
            return
        except ConnectivityError:
            raise
        except Exception as e:
            self._record_failure(result, entity, legacy_id, e)
            return

        if action == "inserted":
            result.inserted += 1
            self.audit.log_insert(entity.name, legacy_id, target_id, run_id=run_id)
        else:
            result.updated += 1
            self.audit.log_update(entity.name, legacy_id, target_id, run_id=run_id)

    def _apply_conflict(
        self,
        entity: EntityDefinition,
        candidate: ConflictCandidate,
        current: Optional[Mapping[str, Any]],
        resolved: Dict[str, Dict[int, str]],
        result: BatchResult,
        run_id: Optional[str],
        pending: Optional[Mapping[int, Optional[str]]] = None,
    ) -> None:
        legacy_id = candidate.legacy_id
        pending = pending or {}
        try:
            new_values = self._prepare(entity, candidate.row, resolved)
        except UnresolvedReferenceError as e:
            self._record_skip(result, entity, legacy_id, str(e))
            return
        except TransformError as e:
            self._record_failure(result, entity, legacy_id, e)
            return

        current = current or {}
        old_values = {key: current.get(key) for key in new_values}
        resolution = self.resolver.resolve(
            entity.name, candidate, old_values, new_values, decision=pending.get(legacy_id)
        )
        record = resolution.record

        try:
            if resolution.action is ResolutionAction.APPLY_SOURCE:
                _, target_id = self._write_row(entity, legacy_id, new_values, candidate.new_hash)
                result.updated += 1
                self.audit.log_update(entity.name, legacy_id, target_id, run_id=run_id)
            elif resolution.action is ResolutionAction.REFRESH_HASH:
                self._refresh_hash(entity, legacy_id, candidate.new_hash)
                result.kept += 1
            else:
                self._record_skip(result, entity, legacy_id, MANUAL_SKIP_REASON)
        except ConnectivityError:
            raise
        except Exception as e:
            record.outcome = ConflictOutcome.FAILED.value
            self._record_failure(result, entity, legacy_id, e)

        result.conflicts.append(record)
        self.audit.log_conflict(
            entity.name,
            legacy_id,
            record.strategy,
            record.outcome,
            record.changed_fields,
            run_id=run_id,
        )
        if self.conflict_repository is None:
            return
        if record.outcome in (ConflictOutcome.PENDING_MANUAL.value, ConflictOutcome.FAILED.value):
            self._retry(
                lambda: self.conflict_repository.record(record, run_id=run_id),
                "conflicts.record",
                entity=entity.name,
                legacy_id=legacy_id,
            )
        elif legacy_id in pending:
            # Settled this run; an earlier pending record is closed
            self._retry(
                lambda: self.conflict_repository.mark_resolved(entity.name, legacy_id),
                "conflicts.mark_resolved",
                entity=entity.name,
                legacy_id=legacy_id,
            )

    def migrate_batch(
        self,
        entity: EntityDefinition,
        rows: Sequence[Mapping[str, Any]],
        conflicts: Sequence[ConflictCandidate] = (),
        run_id: Optional[str] = None,
    ) -> BatchResult:
        """
        Migrate missing rows and resolve conflict candidates for one batch.

        Returns:
            BatchResult with per-row skip reasons, failures and conflicts

        Raises:
            ConnectivityError: A store stayed unreachable through every retry
        """
        result = BatchResult()
        if not rows and not conflicts:
            return result

        resolved = self._resolve_references(
            entity, [*rows, *(candidate.row for candidate in conflicts)]
        )
        for row in rows:
            self._migrate_row(entity, row, resolved, result, run_id)

        if conflicts:
            current_rows = self._retry(
                lambda: self.target_store.fetch_by_legacy_ids(
                    entity, [c.legacy_id for c in conflicts]
                ),
                "target.fetch_by_legacy_ids",
                entity=entity.name,
            )
            pending: Dict[int, Optional[str]] = {}
            if self.conflict_repository is not None:
                pending = self._retry(
                    lambda: self.conflict_repository.pending_decisions(
                        entity.name, [c.legacy_id for c in conflicts]
                    ),
                    "conflicts.pending_decisions",
                    entity=entity.name,
                )
            for candidate in conflicts:
                self._apply_conflict(
                    entity,
                    candidate,
                    current_rows.get(candidate.legacy_id),
                    resolved,
                    result,
                    run_id,
                    pending,
                )

        logger.info(
            "executor.batch.committed",
            entity=entity.name,
            run_id=run_id,
            inserted=result.inserted,
            updated=result.updated,
            kept=result.kept,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    def migrate_entity(
        self,
        entity: EntityDefinition,
        analyzer: DifferentialAnalyzer,
        checkpoints,
        run_id: str,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[EntityProgress] = None,
    ) -> EntityProgress:
        """
        Sequential batch loop for one entity, resuming from its checkpoint.

        The checkpoint cursor is advanced only after a batch has been
        migrated. Cancellation is honoured between batches; a cancelled
        entity keeps its in_progress checkpoint so the next invocation
        resumes where this one stopped.

        Pass ``progress`` to keep the tally of committed batches when the
        loop raises part way through.
        """
        checkpoint = checkpoints.begin(run_id, entity.name)
        progress = progress if progress is not None else EntityProgress()
        progress.resumed_from = progress.cursor = checkpoint.cursor
        progress.delta = DeltaSummary(entity=entity.name)

        index = self._retry(
            lambda: analyzer.load_index(entity), "differential.load_index", entity=entity.name
        )
        for page in analyzer.scan(entity, after=checkpoint.cursor, index=index):
            if cancel_event is not None and cancel_event.is_set():
                progress.cancelled = True
                logger.warning(
                    "executor.entity.cancelled",
                    entity=entity.name,
                    run_id=run_id,
                    cursor=progress.cursor,
                )
                return progress

            batch = self.migrate_batch(entity, page.missing, page.conflicts, run_id=run_id)
            checkpoints.advance(run_id, entity.name, page.cursor, batch)

            progress.result.merge(batch)
            progress.batches += 1
            progress.cursor = page.cursor
            progress.delta.source_rows += page.source_rows
            progress.delta.missing += len(page.missing)
            progress.delta.conflicts += len(page.conflicts)
            progress.delta.unchanged += page.unchanged

        checkpoints.complete(run_id, entity.name)
        return progress
