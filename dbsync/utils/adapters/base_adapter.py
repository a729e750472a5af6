"""
Base adapter for database-specific replication SQL.

An adapter covers everything the engine has to say differently per
database engine:
- DDL generation for the schema synchronizer
- capture triggers and the replay suppression flag they honour
- truncation with foreign-key checks disabled and the bulk insert path
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import Table
from sqlalchemy.engine import Connection, Engine

from dbsync.models.log import ReplicationDirection, ReplicationOperation
from dbsync.models.schema import ColumnInfo, IndexInfo

logger = logging.getLogger(__name__)

SUPPRESSION_FLAG = 'is_replicating'

TRIGGER_EVENTS = (
    (ReplicationOperation.INSERT, 'insert', 'INSERT'),
    (ReplicationOperation.UPDATE, 'update', 'UPDATE'),
    (ReplicationOperation.DELETE, 'delete', 'DELETE'),
)

LOG_COLUMNS = (
    'table_name, operation_type, record_id, data, timestamp, '
    'processed, direction, source_server, operation_id'
)


class BaseDatabaseAdapter(ABC):
    """
    Abstract base class for database-specific replication SQL.

    Implementations handle MySQL, PostgreSQL and SQLite.
    """

    supports_modify_column = True

    def __init__(self, engine: Engine):
        """
        Initialize the adapter.

        Args:
            engine: SQLAlchemy engine of the database this adapter targets
        """
        self.engine = engine

    @property
    @abstractmethod
    def db_type(self) -> str:
        """Return database type identifier."""
        pass

    def quote(self, name: str) -> str:
        return self.engine.dialect.identifier_preparer.quote(name)

    @staticmethod
    def literal(value: str) -> str:
        return "'" + str(value).replace("'", "''") + "'"

    # ==========================================
    # Schema DDL
    # ==========================================

    def column_definition(self, column: ColumnInfo) -> str:
        """Column clause for CREATE/ALTER statements."""
        parts = [self.quote(column.column_name), column.full_data_type]
        parts.append('NULL' if column.is_nullable else 'NOT NULL')
        if column.default_value is not None and not column.is_auto_increment:
            parts.append(f"DEFAULT {column.default_value}")
        return ' '.join(parts)

    def generate_add_column(self, table_name: str, column: ColumnInfo) -> str:
        """
        Generate ADD COLUMN statement.

        Args:
            table_name: Name of the table
            column: Column definition

        Returns:
            ALTER TABLE ADD COLUMN SQL statement
        """
        return f"ALTER TABLE {self.quote(table_name)} ADD COLUMN {self.column_definition(column)}"

    @abstractmethod
    def generate_modify_column(self, table_name: str, column: ColumnInfo,
                               current: ColumnInfo) -> List[str]:
        """
        Generate the statements converging ``current`` to ``column``.

        Args:
            table_name: Name of the table
            column: Wanted column definition
            current: Column definition as it exists now

        Returns:
            List of ALTER statements (empty if unsupported)
        """
        pass

    def generate_drop_column(self, table_name: str, column_name: str) -> str:
        return f"ALTER TABLE {self.quote(table_name)} DROP COLUMN {self.quote(column_name)}"

    def generate_add_index(self, table_name: str, index: IndexInfo) -> str:
        """Generate CREATE INDEX statement."""
        unique_str = 'UNIQUE ' if index.is_unique else ''
        cols_str = ', '.join(self.quote(col) for col in index.column_names)
        return f"CREATE {unique_str}INDEX {self.quote(index.index_name)} ON {self.quote(table_name)} ({cols_str})"

    def generate_drop_index(self, table_name: str, index_name: str) -> str:
        return f"DROP INDEX {self.quote(index_name)}"

    def execute_sql(self, sql: str) -> Tuple[bool, Optional[str]]:
        """
        Execute raw SQL statement.

        Args:
            sql: SQL statement to execute

        Returns:
            Tuple[bool, Optional[str]]: (success, error_message)
        """
        try:
            with self.engine.begin() as conn:
                conn.exec_driver_sql(sql)
            logger.info(f"   Executed: {sql[:100]}{'...' if len(sql) > 100 else ''}")
            return True, None
        except Exception as e:
            error_msg = str(e)
            logger.error(f"   Failed to execute SQL: {error_msg}")
            return False, error_msg

    # ==========================================
    # Capture triggers
    # ==========================================

    @staticmethod
    def trigger_name(table_name: str, event: str) -> str:
        return f"tr_{table_name}_{event}"

    def trigger_names(self, table_name: str) -> List[str]:
        return [self.trigger_name(table_name, event) for _, event, _ in TRIGGER_EVENTS]

    @abstractmethod
    def trigger_exists(self, conn: Connection, trigger_name: str) -> bool:
        pass

    @abstractmethod
    def generate_trigger_statements(self, table_name: str, primary_key: str,
                                    direction: ReplicationDirection, source_server: str) -> List[str]:
        """
        Statements creating the insert/update/delete capture triggers.

        Each trigger appends one replication_logs row per affected row unless
        the suppression flag is set on the writing connection.
        """
        pass

    def generate_drop_trigger_statements(self, table_name: str) -> List[str]:
        return [f"DROP TRIGGER IF EXISTS {self.quote(name)}" for name in self.trigger_names(table_name)]

    def prepare_capture(self, conn: Connection) -> None:
        """Create whatever the triggers need besides replication_logs."""
        pass

    @abstractmethod
    def set_suppression(self, conn: Connection, enabled: bool) -> None:
        """
        Set or clear the replay suppression flag.

        The writer connection must set suppression before writing and clear it
        after, using the same physical connection for both.
        """
        pass

    def reset_session(self, conn: Connection) -> None:
        """Clear session-scoped suppression state after a rolled back batch."""
        pass

    # ==========================================
    # Bulk load
    # ==========================================

    @abstractmethod
    def truncate_table(self, conn: Connection, table_name: str) -> None:
        """Empty a table with foreign-key checks disabled."""
        pass

    def bulk_insert(self, conn: Connection, table: Table, columns: Sequence[str],
                    rows: Iterable[Sequence[Any]]) -> int:
        """
        Insert rows through the fastest path this database offers.

        The default is an executemany insert.

        Returns:
            Number of rows written
        """
        batch = [dict(zip(columns, row)) for row in rows]
        if not batch:
            return 0
        conn.execute(table.insert(), batch)
        return len(batch)
