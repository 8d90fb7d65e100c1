"""
Tests for the migration runner on SQLite.
"""

import pytest
import pytest_asyncio

from db.migrate import apply_migrations, get_applied_migrations, migration_files
from eventrelay.database import DatabaseAdapter, DatabaseConfig

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def empty_db(tmp_path):
    adapter = DatabaseAdapter(DatabaseConfig.sqlite(str(tmp_path / "fresh.db")))
    await adapter.connect()
    assert adapter.is_connected
    yield adapter
    await adapter.disconnect()
    assert not adapter.is_connected


class TestMigrations:

    def test_rollback_files_are_not_forward_migrations(self):
        names = [path.name for _, path in migration_files()]

        assert "001_outbox_messages.sql" in names
        assert not any("rollback" in name for name in names)

    @pytest.mark.asyncio
    async def test_apply_is_recorded_once(self, empty_db):
        assert await apply_migrations(empty_db) == ["001"]
        assert await apply_migrations(empty_db) == []
        assert await get_applied_migrations(empty_db) == {"001"}

        tables = await empty_db.fetch(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        )
        assert {"outbox_messages", "event_idempotency", "schema_migrations"} <= {
            row["name"] for row in tables
        }
