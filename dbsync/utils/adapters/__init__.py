"""
Database adapters for replication SQL.

Provides database-specific implementations for:
- MySQL
- PostgreSQL
- SQLite
"""

from sqlalchemy.engine import Engine

from .base_adapter import BaseDatabaseAdapter
from .mysql_adapter import MySQLAdapter
from .postgres_adapter import PostgreSQLAdapter
from .sqlite_adapter import SQLiteAdapter

ADAPTERS = {
    'mysql': MySQLAdapter,
    'mariadb': MySQLAdapter,
    'postgresql': PostgreSQLAdapter,
    'sqlite': SQLiteAdapter,
}


def get_adapter(engine: Engine) -> BaseDatabaseAdapter:
    """
    Return the adapter for an engine's dialect.

    Raises:
        ValueError: If the dialect is not supported
    """
    adapter_cls = ADAPTERS.get(engine.dialect.name)
    if adapter_cls is None:
        raise ValueError(f"Unsupported database type: {engine.dialect.name}")
    return adapter_cls(engine)


__all__ = [
    'BaseDatabaseAdapter',
    'MySQLAdapter',
    'PostgreSQLAdapter',
    'SQLiteAdapter',
    'get_adapter',
]
