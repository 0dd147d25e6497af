"""Tests for environment-driven settings and RunOptions derivation."""

import pytest
from pydantic import ValidationError

from migration_hub.config.settings import Settings, get_settings
from migration_hub.domain.models import ConflictStrategy, RunOptions, VolumeClass
from tests.fixtures.migration_data import doctor_definition, office_definition


@pytest.mark.unit
class TestSettings:
    def test_defaults(self, monkeypatch):
        for key in ("MH_MAX_WORKERS", "MH_CONFLICT_STRATEGY", "MH_DRY_RUN"):
            monkeypatch.delenv(key, raising=False)

        settings = Settings()

        assert settings.max_workers == 4
        assert settings.conflict_strategy == "source_wins"
        assert settings.batch_size_for("small") == 10000
        assert settings.batch_size_for("massive") == 5000
        assert settings.dry_run is False

    def test_prefixed_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MH_MAX_WORKERS", "8")
        monkeypatch.setenv("MH_CONFLICT_STRATEGY", "target_wins")
        monkeypatch.setenv("MH_BATCH_SIZE_MEDIUM", "250")
        monkeypatch.setenv("MH_CONFLICT_STRATEGY_OVERRIDES", '{"patients": "manual"}')

        settings = get_settings()

        assert settings.max_workers == 8
        assert settings.conflict_strategy == "target_wins"
        assert settings.batch_size_for("medium") == 250
        assert settings.conflict_strategy_overrides == {"patients": "manual"}

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_postgres_scheme_is_normalized(self, monkeypatch):
        monkeypatch.setenv("MH_TARGET_DATABASE_URI", "postgres://mh:pw@db:5432/target")

        settings = Settings()

        assert settings.target_database_uri == "postgresql://mh:pw@db:5432/target"

    def test_unknown_override_strategy_is_rejected(self, monkeypatch):
        monkeypatch.setenv("MH_CONFLICT_STRATEGY_OVERRIDES", '{"patients": "newest_wins"}')

        with pytest.raises(ValidationError, match="Unknown conflict strategies"):
            Settings()

    def test_unknown_default_strategy_is_rejected(self, monkeypatch):
        monkeypatch.setenv("MH_CONFLICT_STRATEGY", "coin_flip")

        with pytest.raises(ValidationError):
            Settings()


@pytest.mark.unit
class TestRunOptions:
    def test_from_settings_maps_every_knob(self, monkeypatch):
        monkeypatch.setenv("MH_BATCH_SIZE_SMALL", "7")
        monkeypatch.setenv("MH_CONFLICT_STRATEGY_OVERRIDES", '{"doctors": "manual"}')
        monkeypatch.setenv("MH_SAMPLE_SEED", "42")

        options = RunOptions.from_settings(Settings(), dry_run=True)

        assert options.batch_sizes[VolumeClass.SMALL] == 7
        assert options.conflict_strategy_overrides == {"doctors": ConflictStrategy.MANUAL}
        assert options.sample_seed == 42
        assert options.dry_run is True

    def test_batch_size_follows_volume_class(self):
        options = RunOptions(batch_sizes={vc: i + 1 for i, vc in enumerate(VolumeClass)})

        assert options.batch_size_for(office_definition()) == 1
        assert options.batch_size_for(doctor_definition()) == 2
