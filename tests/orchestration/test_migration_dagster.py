"""Tests for the migration Dagster op, job, schedule and definitions."""

from datetime import datetime

import pytest
import yaml
from dagster import (
    Definitions,
    Failure,
    JobDefinition,
    RunRequest,
    build_op_context,
    build_schedule_context,
)

from migration_hub.orchestration import schedules
from migration_hub.orchestration.jobs import migration_run_job
from migration_hub.orchestration.ops import MigrationRunOpConfig, migration_run_op
from migration_hub.orchestration.repository import defs
from tests.fixtures.migration_data import count_rows

ENTITIES = {
    "entities": {
        "offices": {
            "source_table": "offices",
            "target_table": "offices",
            "volume_class": "small",
            "critical": True,
        },
        "doctors": {
            "source_table": "doctors",
            "target_table": "doctors",
            "depends_on": ["offices"],
            "references": [{"field": "office_id", "entity": "offices"}],
        },
    }
}


class DummySettings:
    def __init__(self, enabled: bool = True):
        self.schedule_enabled = enabled


@pytest.fixture
def migration_env(office_doctor_stores, source_engine, target_engine, tmp_path, monkeypatch):
    config_file = tmp_path / "entities.yml"
    with open(config_file, "w", encoding="utf-8") as f:
        yaml.dump(ENTITIES, f)
    monkeypatch.setenv("MH_SOURCE_DATABASE_URI", str(source_engine.url))
    monkeypatch.setenv("MH_TARGET_DATABASE_URI", str(target_engine.url))
    monkeypatch.setenv("MH_ENTITIES_CONFIG", str(config_file))
    monkeypatch.setenv("MH_RETRY_BACKOFF_MS", "0")
    return tmp_path


class TestMigrationRunOp:
    def test_op_runs_migration_and_returns_summary(self, migration_env, target_engine):
        context = build_op_context()

        result = migration_run_op(context, MigrationRunOpConfig(run_id="op-run"))

        assert result["run_id"] == "op-run"
        assert result["exit_signal"] == "success"
        assert result["completed"] == ["doctors", "offices"]
        assert result["totals"]["inserted"] == 7
        assert result["totals"]["skipped"] == 1
        assert count_rows(target_engine, "doctors") == 4

    def test_dry_run_config_overrides_settings(self, migration_env, target_engine):
        result = migration_run_op(
            build_op_context(), MigrationRunOpConfig(run_id="preview", dry_run=True)
        )

        assert result["dry_run"] is True
        assert result["totals"]["inserted"] == 0
        assert count_rows(target_engine, "offices") == 0

    def test_fatal_run_raises_failure(self, migration_env):
        cyclic = yaml.safe_load(yaml.dump(ENTITIES))
        cyclic["entities"]["offices"]["depends_on"] = ["doctors"]
        config_file = migration_env / "cyclic.yml"
        config_file.write_text(yaml.dump(cyclic), encoding="utf-8")

        with pytest.raises(Failure, match="Circular dependency"):
            migration_run_op(
                build_op_context(),
                MigrationRunOpConfig(run_id="bad", entities_config=str(config_file)),
            )

    def test_job_wires_the_op(self):
        assert migration_run_job.name == "migration_run_job"
        assert [node.name for node in migration_run_job.graph.nodes] == ["migration_run_op"]


class TestMigrationNightlySchedule:
    def test_disabled_schedule_skips(self, monkeypatch):
        monkeypatch.setattr(schedules, "get_settings", lambda: DummySettings(enabled=False))

        ctx = build_schedule_context(scheduled_execution_time=None)

        assert schedules.migration_nightly_schedule(ctx) is None

    def test_run_id_is_derived_from_scheduled_date(self, monkeypatch):
        monkeypatch.setattr(schedules, "get_settings", lambda: DummySettings(enabled=True))
        scheduled_time = datetime(2025, 3, 9, 2, 0, 0)

        result = schedules.migration_nightly_schedule(
            build_schedule_context(scheduled_execution_time=scheduled_time)
        )

        assert isinstance(result, RunRequest)
        assert scheduled_time.isoformat() in result.run_key
        run_config = result.run_config["ops"]["migration_run_op"]["config"]
        assert run_config["run_id"] == "nightly-20250309"
        assert run_config["run_validation"] is True


class TestDefinitions:
    def test_definitions_register_job_and_schedule(self):
        assert isinstance(defs, Definitions)
        assert [job.name for job in defs.jobs] == ["migration_run_job"]
        assert all(isinstance(job, JobDefinition) for job in defs.jobs)
        assert [s.name for s in defs.schedules] == ["migration_nightly_schedule"]
