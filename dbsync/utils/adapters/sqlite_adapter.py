"""
SQLite adapter.

SQLite has no session variables, so replay suppression is a marker row in
``replication_session_flags`` written and removed inside the writer's own
transaction. SQLite allows one writer at a time and other connections only
see committed rows, so no other writer ever observes the marker.
"""

import logging
from typing import List

from sqlalchemy import text
from sqlalchemy.engine import Connection

from dbsync.models.log import ReplicationDirection
from dbsync.models.schema import ColumnInfo
from .base_adapter import BaseDatabaseAdapter, LOG_COLUMNS, SUPPRESSION_FLAG, TRIGGER_EVENTS

logger = logging.getLogger(__name__)

FLAGS_TABLE = 'replication_session_flags'


class SQLiteAdapter(BaseDatabaseAdapter):
    """SQLite-specific replication SQL."""

    supports_modify_column = False

    @property
    def db_type(self) -> str:
        return 'sqlite'

    def generate_modify_column(self, table_name: str, column: ColumnInfo,
                               current: ColumnInfo) -> List[str]:
        # ALTER TABLE cannot change an existing column in SQLite
        return []

    def trigger_exists(self, conn: Connection, trigger_name: str) -> bool:
        sql = text("SELECT COUNT(*) FROM sqlite_master WHERE type = 'trigger' AND name = :trigger_name")
        return bool(conn.execute(sql, {'trigger_name': trigger_name}).scalar())

    def prepare_capture(self, conn: Connection) -> None:
        conn.exec_driver_sql(f"CREATE TABLE IF NOT EXISTS {FLAGS_TABLE} (flag_name TEXT PRIMARY KEY)")

    def generate_trigger_statements(self, table_name: str, primary_key: str,
                                    direction: ReplicationDirection, source_server: str) -> List[str]:
        statements = []
        for operation, event, sql_event in TRIGGER_EVENTS:
            row = 'OLD' if event == 'delete' else 'NEW'
            record_id = f"CAST({row}.{self.quote(primary_key)} AS TEXT)"
            statements.append(
                f"CREATE TRIGGER {self.quote(self.trigger_name(table_name, event))} "
                f"AFTER {sql_event} ON {self.quote(table_name)}\n"
                f"FOR EACH ROW WHEN NOT EXISTS "
                f"(SELECT 1 FROM {FLAGS_TABLE} WHERE flag_name = '{SUPPRESSION_FLAG}')\n"
                f"BEGIN\n"
                f"    INSERT INTO replication_logs ({LOG_COLUMNS})\n"
                f"    VALUES ({self.literal(table_name)}, {int(operation)}, {record_id}, {record_id}, "
                f"datetime('now', 'localtime'), 0, {int(direction)}, {self.literal(source_server)}, "
                f"lower(hex(randomblob(16))));\n"
                f"END"
            )
        return statements

    def set_suppression(self, conn: Connection, enabled: bool) -> None:
        if enabled:
            self.prepare_capture(conn)
            conn.execute(
                text(f"INSERT OR REPLACE INTO {FLAGS_TABLE} (flag_name) VALUES (:flag)"),
                {'flag': SUPPRESSION_FLAG}
            )
        else:
            conn.execute(text(f"DELETE FROM {FLAGS_TABLE} WHERE flag_name = :flag"), {'flag': SUPPRESSION_FLAG})

    def truncate_table(self, conn: Connection, table_name: str) -> None:
        # foreign keys are only enforced when PRAGMA foreign_keys is on, and
        # the pragma cannot change inside a transaction
        conn.exec_driver_sql(f"DELETE FROM {self.quote(table_name)}")
