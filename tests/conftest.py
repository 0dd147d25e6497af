"""Shared pytest fixtures: SQLite source/target stores and entity definitions.

Every test gets fresh file-backed SQLite databases under ``tmp_path`` so
concurrent entity workers can open their own connections.
"""

from __future__ import annotations

import os

import pytest

# Keep Settings() independent of any developer .env file
os.environ.setdefault("MH_ENV_FILE", "tests/.env.test-does-not-exist")

from migration_hub.config.settings import get_settings  # noqa: E402
from migration_hub.domain.models import RunOptions  # noqa: E402
from migration_hub.io.connections import build_engine  # noqa: E402
from migration_hub.io.connectors import SqlSourceReader, TargetStore  # noqa: E402
from migration_hub.io.repositories import MappingRepository  # noqa: E402
from migration_hub.io.retry import RetryPolicy  # noqa: E402
from migration_hub.io.schema import ensure_control_tables  # noqa: E402
from tests.fixtures.migration_data import (  # noqa: E402
    DOCTOR_ROWS,
    OFFICE_ROWS,
    create_office_doctor_schema,
    doctor_definition,
    insert_rows,
    office_definition,
)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def source_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'legacy_source.db'}", 5)
    yield engine
    engine.dispose()


@pytest.fixture
def target_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'migration_target.db'}", 5)
    yield engine
    engine.dispose()


@pytest.fixture
def no_retry_policy():
    return RetryPolicy(max_attempts=2, backoff_ms=0)


@pytest.fixture
def run_options():
    return RunOptions(retry_backoff_ms=0, retry_max_attempts=2, max_workers=2)


@pytest.fixture
def source_reader(source_engine, no_retry_policy):
    return SqlSourceReader(source_engine, no_retry_policy)


@pytest.fixture
def target_store(target_engine):
    return TargetStore(target_engine)


@pytest.fixture
def mapping_repo(target_engine):
    ensure_control_tables(target_engine)
    return MappingRepository(target_engine)


@pytest.fixture
def office_doctor_stores(source_engine, target_engine):
    """Source seeded with 3 offices and 5 doctors (one pointing at office 999)."""
    create_office_doctor_schema(source_engine, target_engine)
    insert_rows(source_engine, "offices", OFFICE_ROWS)
    insert_rows(source_engine, "doctors", DOCTOR_ROWS)
    return source_engine, target_engine


@pytest.fixture
def office_doctor_definitions():
    return [office_definition(), doctor_definition()]
