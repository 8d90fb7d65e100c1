"""
Integration Test Fixtures

Each test gets a fresh SQLite file with the outbox migration applied.
"""

import pytest
import pytest_asyncio
from pathlib import Path

from eventrelay.database import DatabaseAdapter, DatabaseConfig
from eventrelay.outbox.store import DatabaseOutboxStore

MIGRATION = Path(__file__).parents[2] / "db" / "migrations" / "001_outbox_messages.sql"


@pytest_asyncio.fixture
async def db(tmp_path):
    """Connected adapter on a throwaway SQLite database."""
    adapter = DatabaseAdapter(DatabaseConfig.sqlite(str(tmp_path / "relay.db")))
    await adapter.connect()
    await adapter.execute_script(MIGRATION.read_text())
    yield adapter
    await adapter.disconnect()


@pytest.fixture
def db_store(db):
    return DatabaseOutboxStore(db)
