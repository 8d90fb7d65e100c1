"""
Tests for environment-driven settings.
"""

from eventrelay.config import RelaySettings, is_outbox_enabled, is_outbox_processor_enabled
from eventrelay.database import DatabaseBackend, DatabaseConfig


class TestRelaySettings:

    def test_defaults(self, monkeypatch):
        for name in ("OUTBOX_DISPATCH_MODE", "OUTBOX_BATCH_SIZE", "OUTBOX_SCHEDULER_ENABLED"):
            monkeypatch.delenv(name, raising=False)

        settings = RelaySettings.from_env()

        assert settings.dispatch_mode == "continuous"
        assert settings.batch_size == 50
        assert settings.processed_retention_days == 7
        assert settings.failed_retention_days == 30
        assert settings.scheduler_enabled is True

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("OUTBOX_DISPATCH_MODE", "Scheduled")
        monkeypatch.setenv("OUTBOX_BATCH_SIZE", "10")
        monkeypatch.setenv("OUTBOX_CLEANUP_BATCH_DELAY_SECONDS", "0.5")
        monkeypatch.setenv("OUTBOX_SCHEDULER_ENABLED", "no")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = RelaySettings.from_env()

        assert settings.dispatch_mode == "scheduled"
        assert settings.batch_size == 10
        assert settings.cleanup_batch_delay_seconds == 0.5
        assert settings.scheduler_enabled is False
        assert settings.log_level == "DEBUG"

    def test_feature_flags(self, monkeypatch):
        monkeypatch.setenv("OUTBOX_ENABLED", "false")
        monkeypatch.setenv("OUTBOX_PROCESSOR_ENABLED", "1")

        assert is_outbox_enabled() is False
        assert is_outbox_processor_enabled() is True


class TestDatabaseConfig:

    def test_backend_selection(self, monkeypatch):
        monkeypatch.setenv("DATABASE_BACKEND", "postgres")
        assert DatabaseConfig().backend == DatabaseBackend.POSTGRESQL

        monkeypatch.delenv("DATABASE_BACKEND")
        assert DatabaseConfig().backend == DatabaseBackend.SQLITE

    def test_repr_hides_credentials(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://relay:secret@db:5432/relay")
        config = DatabaseConfig(backend=DatabaseBackend.POSTGRESQL)

        assert "secret" not in repr(config)
        assert "db:5432/relay" in repr(config)
