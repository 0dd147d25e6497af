"""End-to-end migration runs over file-backed SQLite source and target stores."""

import threading
from unittest.mock import Mock

import pytest
import sqlalchemy as sa

from migration_hub.domain.models import ConflictStrategy, VolumeClass
from migration_hub.domain.orchestrator import MigrationOrchestrator
from migration_hub.domain.results import (
    CheckpointStatus,
    CheckType,
    EntityStatus,
    ExitSignal,
    RunStatus,
)
from migration_hub.io.repositories import (
    CheckpointRepository,
    ConflictRepository,
    MappingRepository,
    RunRepository,
)
from tests.fixtures.migration_data import (
    chain_definitions,
    chain_schema,
    count_rows,
    execute_ddl,
    fetch_all,
    insert_rows,
)

pytestmark = pytest.mark.integration


def _orchestrator(definitions, source_reader, target_engine, run_options, **option_overrides):
    options = run_options.model_copy(update=option_overrides)
    return MigrationOrchestrator(definitions, source_reader, target_engine, options=options)


def _small_batches():
    return {vc: 2 for vc in VolumeClass}


def _crash_after(orchestrator, calls_allowed, exc=None, on_call=None):
    """Wrap executor.migrate_batch so it fails (or runs a hook) after N calls."""
    original = orchestrator.executor.migrate_batch
    state = {"calls": 0}

    def wrapped(*args, **kwargs):
        state["calls"] += 1
        if exc is not None and state["calls"] > calls_allowed:
            raise exc
        result = original(*args, **kwargs)
        if on_call is not None and state["calls"] >= calls_allowed:
            on_call()
        return result

    orchestrator.executor.migrate_batch = wrapped
    return state


def _rename_source_office(source_engine, legacy_id, name):
    with source_engine.begin() as conn:
        conn.execute(
            sa.text("UPDATE offices SET name = :name WHERE id = :id"), {"name": name, "id": legacy_id}
        )


class TestOfficeDoctorMigration:
    def test_full_run_migrates_and_reports_skips(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        summary = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options
        ).run(run_id="r1")

        assert summary.exit_signal is ExitSignal.SUCCESS
        assert summary.status is RunStatus.COMPLETED
        assert summary.levels == [["offices"], ["doctors"]]
        assert count_rows(target_engine, "offices") == 3
        assert count_rows(target_engine, "doctors") == 4

        doctors = summary.entities["doctors"]
        assert (doctors.inserted, doctors.skipped, doctors.failed) == (4, 1, 0)
        assert doctors.skipped_rows[0].legacy_id == 12
        assert doctors.skipped_rows[0].reason == "unresolved office reference: 999"

        integrity = [v for v in summary.validation if v.check_type is CheckType.REFERENTIAL_INTEGRITY]
        assert integrity and all(v.passed and v.actual == 0 for v in integrity)
        parity = {
            v.entity: v for v in summary.validation if v.check_type is CheckType.COUNT_PARITY
        }
        assert parity["offices"].passed
        assert not parity["doctors"].passed and parity["doctors"].severity == "warning"

        run_row = RunRepository(target_engine).get("r1")
        assert run_row["status"] == "completed"
        assert run_row["summary"]["totals"]["inserted"] == 7

    def test_rerun_is_idempotent(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        _orchestrator(office_doctor_definitions, source_reader, target_engine, run_options).run(
            run_id="r1"
        )
        before = fetch_all(target_engine, "doctors")

        again = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options
        ).run(run_id="r2")

        assert again.exit_signal is ExitSignal.SUCCESS
        assert again.totals["inserted"] == 0
        assert again.totals["updated"] == 0
        assert again.entities["doctors"].delta.unchanged == 4
        assert fetch_all(target_engine, "doctors") == before
        assert MappingRepository(target_engine).count("doctors") == 4

    def test_same_run_id_after_success_does_nothing(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        _orchestrator(office_doctor_definitions, source_reader, target_engine, run_options).run(
            run_id="r1"
        )

        again = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options
        ).run(run_id="r1")

        assert again.exit_signal is ExitSignal.SUCCESS
        assert again.entities["offices"].reason == "completed in an earlier invocation"
        assert again.totals["inserted"] == 0

    def test_subset_run_treats_outside_dependencies_as_done(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        orchestrator = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options
        )
        orchestrator.run(run_id="offices-only", entities=["offices"])

        summary = orchestrator.run(run_id="doctors-only", entities=["doctors"])

        assert summary.levels == [["doctors"]]
        assert summary.entities["doctors"].inserted == 4


class TestResumeAndCancellation:
    def test_resume_after_crash_continues_from_cursor(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        first = _orchestrator(
            office_doctor_definitions,
            source_reader,
            target_engine,
            run_options,
            batch_sizes=_small_batches(),
        )
        # offices takes two batches, doctors crashes on its second
        _crash_after(first, 3, exc=RuntimeError("worker process killed"))

        crashed = first.run(run_id="nightly")

        assert crashed.exit_signal is ExitSignal.PARTIAL_SUCCESS
        assert crashed.entities["offices"].status is EntityStatus.COMPLETED
        assert crashed.entities["doctors"].status is EntityStatus.FAILED
        assert "worker process killed" in crashed.entities["doctors"].reason
        assert crashed.entities["doctors"].inserted == count_rows(target_engine, "doctors") == 2
        assert crashed.entities["doctors"].batches == 1
        assert crashed.totals["inserted"] == 5
        checkpoint = CheckpointRepository(target_engine).get("nightly", "doctors")
        assert checkpoint.status is CheckpointStatus.FAILED
        assert checkpoint.cursor == 11

        resumed = _orchestrator(
            office_doctor_definitions,
            source_reader,
            target_engine,
            run_options,
            batch_sizes=_small_batches(),
        ).run(run_id="nightly")

        assert resumed.exit_signal is ExitSignal.SUCCESS
        assert resumed.entities["offices"].reason == "completed in an earlier invocation"
        assert (resumed.entities["doctors"].inserted, resumed.entities["doctors"].skipped) == (2, 1)
        legacy_ids = [row["legacy_id"] for row in fetch_all(target_engine, "doctors")]
        assert legacy_ids == [10, 11, 13, 14]
        assert CheckpointRepository(target_engine).get("nightly", "doctors").status is (
            CheckpointStatus.COMPLETED
        )

    def test_cancellation_stops_between_batches_and_resumes(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        cancel = threading.Event()
        first = _orchestrator(
            office_doctor_definitions,
            source_reader,
            target_engine,
            run_options,
            batch_sizes=_small_batches(),
        )
        _crash_after(first, 3, on_call=cancel.set)

        cancelled = first.run(run_id="nightly", cancel_event=cancel)

        assert cancelled.status is RunStatus.CANCELLED
        assert cancelled.exit_signal is ExitSignal.PARTIAL_SUCCESS
        assert cancelled.entities["doctors"].status is EntityStatus.CANCELLED
        assert cancelled.entities["doctors"].reason == "cancelled after cursor 11"
        assert cancelled.validation == []
        assert count_rows(target_engine, "doctors") == 2

        resumed = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options
        ).run(run_id="nightly")

        assert resumed.exit_signal is ExitSignal.SUCCESS
        assert resumed.entities["doctors"].inserted == 2
        assert count_rows(target_engine, "doctors") == 4

    def test_cancel_before_start_touches_no_entity(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        cancel = threading.Event()
        cancel.set()

        summary = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options
        ).run(run_id="r1", cancel_event=cancel)

        assert summary.status is RunStatus.CANCELLED
        assert all(o.status is EntityStatus.NOT_STARTED for o in summary.entities.values())
        assert summary.entities["offices"].reason == "run cancelled before entity started"
        assert count_rows(target_engine, "offices") == 0


class TestDependencyOrdering:
    def test_levels_run_in_dependency_order(self, source_engine, target_engine, source_reader, run_options):
        names = ["regions", "districts", "stations"]
        chain_schema(source_engine, target_engine, names)
        insert_rows(source_engine, "regions", [{"id": 1, "label": "r1"}, {"id": 2, "label": "r2"}])
        insert_rows(source_engine, "districts", [{"id": 1, "label": "d1", "parent_id": 1}])
        insert_rows(source_engine, "stations", [{"id": 1, "label": "s1", "parent_id": 1}])
        calls = []

        def recording(name):
            def transform(row):
                calls.append(name)
                return {"label": row["label"]}

            return transform

        definitions = [
            d.model_copy(update={"transform": recording(d.name)}) for d in chain_definitions(names)
        ]

        summary = _orchestrator(definitions, source_reader, target_engine, run_options).run()

        assert summary.exit_signal is ExitSignal.SUCCESS
        assert summary.levels == [["regions"], ["districts"], ["stations"]]
        assert calls[:2] == ["regions", "regions"]
        assert calls.index("districts") < calls.index("stations")
        station = fetch_all(target_engine, "stations")[0]
        district = fetch_all(target_engine, "districts")[0]
        assert station["parent_id"] == district["id"]

    def test_failure_is_isolated_to_dependents(
        self, source_engine, target_engine, source_reader, run_options
    ):
        names = ["regions", "districts", "stations"]
        chain_schema(source_engine, target_engine, names + ["depots"])
        execute_ddl(target_engine, ["DROP TABLE districts"])
        insert_rows(source_engine, "regions", [{"id": 1, "label": "r1"}])
        insert_rows(source_engine, "districts", [{"id": 1, "label": "d1", "parent_id": 1}])
        insert_rows(source_engine, "stations", [{"id": 1, "label": "s1", "parent_id": 1}])
        insert_rows(source_engine, "depots", [{"id": 1, "label": "p1", "parent_id": 1}])
        depots = chain_definitions(["regions", "depots"])[1]

        summary = _orchestrator(
            chain_definitions(names) + [depots], source_reader, target_engine, run_options
        ).run(run_id="r1")

        assert summary.exit_signal is ExitSignal.PARTIAL_SUCCESS
        assert summary.status is RunStatus.PARTIAL
        assert summary.levels == [["regions"], ["depots", "districts"], ["stations"]]
        assert summary.entities["districts"].status is EntityStatus.FAILED
        assert summary.entities["districts"].reason.startswith("connectivity")
        assert summary.entities["stations"].status is EntityStatus.SKIPPED
        assert summary.entities["stations"].reason == "dependency 'districts' failed"
        assert summary.entities["depots"].status is EntityStatus.COMPLETED
        assert count_rows(target_engine, "depots") == 1
        assert CheckpointRepository(target_engine).get("r1", "stations").status is (
            CheckpointStatus.PENDING
        )

    def test_skip_reason_names_the_failed_ancestor(
        self, source_engine, target_engine, source_reader, run_options
    ):
        names = ["regions", "districts", "stations", "kiosks"]
        chain_schema(source_engine, target_engine, names)
        execute_ddl(target_engine, ["DROP TABLE districts"])
        insert_rows(source_engine, "regions", [{"id": 1, "label": "r1"}])
        insert_rows(source_engine, "districts", [{"id": 1, "label": "d1", "parent_id": 1}])

        summary = _orchestrator(
            chain_definitions(names), source_reader, target_engine, run_options
        ).run(run_id="r1")

        assert summary.entities["districts"].status is EntityStatus.FAILED
        for name in ("stations", "kiosks"):
            assert summary.entities[name].status is EntityStatus.SKIPPED
            assert summary.entities[name].reason == "dependency 'districts' failed"

    def test_cycle_is_fatal_before_any_io(self, run_options):
        source = Mock()
        target_engine = Mock()
        x, y = chain_definitions(["X", "Y"])
        x = x.model_copy(update={"depends_on": ["Y"]})

        summary = MigrationOrchestrator([x, y], source, target_engine, options=run_options).run()

        assert summary.exit_signal is ExitSignal.FATAL
        assert summary.status is RunStatus.FATAL
        assert "X" in summary.error and "Y" in summary.error
        assert source.mock_calls == []
        assert target_engine.mock_calls == []

    def test_unknown_entity_selection_is_fatal(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        summary = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options
        ).run(entities=["ambulances"])

        assert summary.exit_signal is ExitSignal.FATAL
        assert count_rows(target_engine, "offices") == 0


class TestDryRun:
    def test_dry_run_reports_delta_and_writes_nothing(
        self, office_doctor_stores, office_doctor_definitions, source_reader, target_engine, run_options
    ):
        summary = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options, dry_run=True
        ).run(run_id="preview")

        assert summary.dry_run is True
        assert summary.exit_signal is ExitSignal.SUCCESS
        assert summary.entities["offices"].delta.missing == 3
        assert summary.entities["doctors"].delta.missing == 5
        assert summary.validation == []
        assert count_rows(target_engine, "offices") == 0
        inspector = sa.inspect(target_engine)
        assert not inspector.has_table("migration_mappings")
        assert not inspector.has_table("migration_runs")

    def test_dry_run_after_migration_reports_conflicts(
        self, office_doctor_stores, office_doctor_definitions, source_reader, source_engine,
        target_engine, run_options,
    ):
        _orchestrator(office_doctor_definitions, source_reader, target_engine, run_options).run(
            run_id="r1"
        )
        _rename_source_office(source_engine, 1, "North Dispatch HQ")

        summary = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options, dry_run=True
        ).run(run_id="preview")

        offices = summary.entities["offices"].delta
        assert (offices.missing, offices.conflicts, offices.unchanged) == (0, 1, 2)
        assert fetch_all(target_engine, "offices")[0]["name"] == "North Dispatch"


class TestConflictRuns:
    def _migrate_then_rename(self, definitions, source_reader, source_engine, target_engine, options):
        _orchestrator(definitions, source_reader, target_engine, options).run(run_id="r1")
        _rename_source_office(source_engine, 1, "North Dispatch HQ")

    def test_source_wins_updates_target(
        self, office_doctor_stores, office_doctor_definitions, source_reader, source_engine,
        target_engine, run_options,
    ):
        self._migrate_then_rename(
            office_doctor_definitions, source_reader, source_engine, target_engine, run_options
        )

        summary = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options
        ).run(run_id="r2")

        assert summary.entities["offices"].updated == 1
        assert [c.outcome for c in summary.conflicts] == ["source_applied"]
        assert fetch_all(target_engine, "offices")[0]["name"] == "North Dispatch HQ"

    def test_target_wins_keeps_target_and_settles(
        self, office_doctor_stores, office_doctor_definitions, source_reader, source_engine,
        target_engine, run_options,
    ):
        self._migrate_then_rename(
            office_doctor_definitions, source_reader, source_engine, target_engine, run_options
        )

        first = _orchestrator(
            office_doctor_definitions,
            source_reader,
            target_engine,
            run_options,
            conflict_strategy=ConflictStrategy.TARGET_WINS,
        ).run(run_id="r2")
        second = _orchestrator(
            office_doctor_definitions,
            source_reader,
            target_engine,
            run_options,
            conflict_strategy=ConflictStrategy.TARGET_WINS,
        ).run(run_id="r3")

        assert first.entities["offices"].kept == 1
        assert [c.outcome for c in first.conflicts] == ["target_kept"]
        assert fetch_all(target_engine, "offices")[0]["name"] == "North Dispatch"
        assert second.conflicts == []

    def test_manual_conflict_is_persisted_for_an_operator(
        self, office_doctor_stores, office_doctor_definitions, source_reader, source_engine,
        target_engine, run_options,
    ):
        self._migrate_then_rename(
            office_doctor_definitions, source_reader, source_engine, target_engine, run_options
        )

        summary = _orchestrator(
            office_doctor_definitions,
            source_reader,
            target_engine,
            run_options,
            conflict_strategy_overrides={"offices": ConflictStrategy.MANUAL},
        ).run(run_id="r2")

        pending = ConflictRepository(target_engine).list_pending("offices")
        assert summary.exit_signal is ExitSignal.SUCCESS
        assert [c.legacy_id for c in pending] == [1]
        assert pending[0].new_values["name"] == "North Dispatch HQ"
        assert fetch_all(target_engine, "offices")[0]["name"] == "North Dispatch"

    def test_operator_decision_is_applied_on_next_run(
        self, office_doctor_stores, office_doctor_definitions, source_reader, source_engine,
        target_engine, run_options,
    ):
        self._migrate_then_rename(
            office_doctor_definitions, source_reader, source_engine, target_engine, run_options
        )
        manual = {"conflict_strategy_overrides": {"offices": ConflictStrategy.MANUAL}}
        conflicts = ConflictRepository(target_engine)

        flagged = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options, **manual
        ).run(run_id="r2")
        conflicts.decide("offices", 1, "source_wins")
        settled = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options, **manual
        ).run(run_id="r3")
        quiet = _orchestrator(
            office_doctor_definitions, source_reader, target_engine, run_options, **manual
        ).run(run_id="r4")

        assert [c.outcome for c in flagged.conflicts] == ["pending_manual"]
        assert [(c.outcome, c.decision) for c in settled.conflicts] == [
            ("source_applied", "source_wins")
        ]
        assert settled.entities["offices"].updated == 1
        assert fetch_all(target_engine, "offices")[0]["name"] == "North Dispatch HQ"
        assert conflicts.list_pending() == []
        assert quiet.conflicts == []
