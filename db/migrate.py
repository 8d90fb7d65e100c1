#!/usr/bin/env python3
"""
Database Migration Runner

Usage:
    python -m db.migrate              # Run all pending migrations
    python -m db.migrate --status     # Show migration status
    python -m db.migrate --rollback   # Show rollback instructions

Environment:
    DATABASE_BACKEND - sqlite or postgresql (default: sqlite)
    DATABASE_URL     - PostgreSQL connection string
    SQLITE_PATH      - SQLite database file (default: eventrelay.db)
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set, Tuple

from eventrelay.database.adapter import DatabaseAdapter, DatabaseConfig

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_SCHEMA_MIGRATIONS = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL
);
"""


def migration_files(directory: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """(version, path) for every forward migration, in order."""
    files = sorted(directory.glob("*.sql"))
    return [
        (f.stem.split("_")[0], f)
        for f in files
        if "rollback" not in f.name.lower()
    ]


async def get_applied_migrations(db: DatabaseAdapter) -> Set[str]:
    """Get set of already-applied migration versions."""
    await db.execute_script(_SCHEMA_MIGRATIONS)
    rows = await db.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def run_migration(db: DatabaseAdapter, version: str, path: Path) -> None:
    """Run a single migration and record it."""
    print(f"  Running migration {version}...")
    try:
        await db.execute_script(path.read_text())
        await db.execute(
            "INSERT INTO schema_migrations (version, name, applied_at) VALUES ($1, $2, $3)",
            version, path.stem, datetime.now(timezone.utc),
        )
        print(f"  Migration {version} complete")
    except Exception as e:
        print(f"  Migration {version} failed: {e}")
        raise


async def apply_migrations(db: DatabaseAdapter, directory: Path = MIGRATIONS_DIR) -> List[str]:
    """Apply pending migrations on a connected adapter. Returns applied versions."""
    applied = await get_applied_migrations(db)
    pending = [(v, f) for v, f in migration_files(directory) if v not in applied]

    for version, path in pending:
        await run_migration(db, version, path)
    return [v for v, _ in pending]


async def run_all_migrations(config: Optional[DatabaseConfig] = None) -> None:
    """Run all pending migrations."""
    db = DatabaseAdapter(config)
    print("=" * 60)
    print("eventrelay Database Migration Runner")
    print("=" * 60)
    print(f"\nDatabase: {db.config}")
    print(f"Migrations: {MIGRATIONS_DIR}\n")

    await db.connect()
    try:
        applied = await apply_migrations(db)
        if not applied:
            print("No pending migrations. Database is up to date.")
            return

        print("\n" + "=" * 60)
        print(f"All migrations complete: {', '.join(applied)}")
        print("=" * 60)
    finally:
        await db.disconnect()


async def show_status(config: Optional[DatabaseConfig] = None) -> None:
    """Show migration status."""
    db = DatabaseAdapter(config)
    print("=" * 60)
    print("Migration Status")
    print("=" * 60)
    print(f"\nDatabase: {db.config}")
    print(f"Migrations: {MIGRATIONS_DIR}\n")

    await db.connect()
    try:
        applied = await get_applied_migrations(db)

        print("Migrations:")
        print("-" * 50)
        for version, path in migration_files():
            status = "Applied" if version in applied else "Pending"
            print(f"  {version}: {path.stem}")
            print(f"      Status: {status}")
    finally:
        await db.disconnect()


async def run_rollback(config: Optional[DatabaseConfig] = None) -> None:
    """Print rollback instructions for the last migration."""
    db = DatabaseAdapter(config)
    print("=" * 60)
    print("Migration Rollback")
    print("=" * 60)
    print("\nWARNING: Rollback can cause data loss!")
    print("This feature requires manual confirmation.\n")

    await db.connect()
    try:
        applied = await get_applied_migrations(db)
        if not applied:
            print("No migrations to rollback.")
            return

        last_version = sorted(applied)[-1]
        rollback_files = list(MIGRATIONS_DIR.glob(f"{last_version}_*_rollback.sql"))
        if not rollback_files:
            print(f"No rollback file found for migration {last_version}")
            return

        rollback_file = rollback_files[0]
        print(f"Last applied migration: {last_version}")
        print(f"Rollback file: {rollback_file.name}")
        print()
        print("To rollback, run the SQL manually, then delete the schema_migrations row:")
        print(f"  psql $DATABASE_URL -f {rollback_file}")
        print(f"  sqlite3 $SQLITE_PATH < {rollback_file}")
    finally:
        await db.disconnect()


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="eventrelay Database Migration Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m db.migrate              # Run pending migrations
  python -m db.migrate --status     # Show status
  python -m db.migrate --rollback   # Show rollback instructions
        """
    )
    parser.add_argument("--status", action="store_true", help="Show migration status")
    parser.add_argument("--rollback", action="store_true", help="Show rollback instructions")
    args = parser.parse_args()

    if args.status:
        await show_status()
    elif args.rollback:
        await run_rollback()
    else:
        await run_all_migrations()


if __name__ == "__main__":
    asyncio.run(main())
