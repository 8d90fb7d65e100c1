"""Database access: adapter, configuration and units of work."""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    UnitOfWork,
    affected_rows,
    close_database,
    get_database,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "UnitOfWork",
    "affected_rows",
    "close_database",
    "get_database",
]
