"""
PostgreSQL adapter.

Triggers share one plpgsql capture function per table and honour the
transaction-local setting ``dbsync.is_replicating``; bulk loads go through
COPY ... FROM STDIN.
"""

import logging
from typing import Any, Iterable, List, Sequence

from sqlalchemy import Table, text
from sqlalchemy.engine import Connection

from dbsync.models.log import ReplicationDirection
from dbsync.models.schema import ColumnInfo
from dbsync.utils.record_codec import DelimitedRecordEncoder, EncodedRowStream, table_column_kinds
from .base_adapter import BaseDatabaseAdapter, LOG_COLUMNS, TRIGGER_EVENTS

logger = logging.getLogger(__name__)

SETTING_NAME = 'dbsync.is_replicating'


class PostgreSQLAdapter(BaseDatabaseAdapter):
    """PostgreSQL-specific replication SQL."""

    @property
    def db_type(self) -> str:
        return 'postgresql'

    def column_definition(self, column: ColumnInfo) -> str:
        if column.is_auto_increment:
            serial = 'BIGSERIAL' if 'BIG' in column.data_type else 'SERIAL'
            return f"{self.quote(column.column_name)} {serial}"
        return super().column_definition(column)

    def generate_modify_column(self, table_name: str, column: ColumnInfo,
                               current: ColumnInfo) -> List[str]:
        """
        Generate ALTER COLUMN statements for PostgreSQL.

        Handles:
        1. Type change (ALTER COLUMN ... TYPE ... USING)
        2. Nullability change (SET/DROP NOT NULL)
        3. Default change (SET/DROP DEFAULT)
        """
        table = self.quote(table_name)
        name = self.quote(column.column_name)
        clauses = []
        if column.full_data_type.upper() != current.full_data_type.upper():
            clauses.append(
                f"ALTER COLUMN {name} TYPE {column.full_data_type} USING {name}::{column.full_data_type}"
            )
        if column.is_nullable != current.is_nullable:
            clauses.append(f"ALTER COLUMN {name} {'DROP' if column.is_nullable else 'SET'} NOT NULL")
        if column.default_value != current.default_value and not column.is_auto_increment:
            if column.default_value is None:
                clauses.append(f"ALTER COLUMN {name} DROP DEFAULT")
            else:
                clauses.append(f"ALTER COLUMN {name} SET DEFAULT {column.default_value}")
        if not clauses:
            return []
        return [f"ALTER TABLE {table} {', '.join(clauses)}"]

    def trigger_exists(self, conn: Connection, trigger_name: str) -> bool:
        sql = text("SELECT COUNT(*) FROM pg_trigger WHERE tgname = :trigger_name AND NOT tgisinternal")
        return bool(conn.execute(sql, {'trigger_name': trigger_name}).scalar())

    @staticmethod
    def function_name(table_name: str) -> str:
        return f"dbsync_capture_{table_name}"

    def generate_trigger_statements(self, table_name: str, primary_key: str,
                                    direction: ReplicationDirection, source_server: str) -> List[str]:
        pk = self.quote(primary_key)
        function = self.quote(self.function_name(table_name))
        statements = [
            f"CREATE OR REPLACE FUNCTION {function}() RETURNS trigger AS $$\n"
            f"DECLARE\n"
            f"    rec_id TEXT;\n"
            f"BEGIN\n"
            f"    IF coalesce(current_setting('{SETTING_NAME}', true), '0') = '1' THEN\n"
            f"        RETURN NULL;\n"
            f"    END IF;\n"
            f"    IF TG_OP = 'DELETE' THEN\n"
            f"        rec_id := OLD.{pk}::text;\n"
            f"    ELSE\n"
            f"        rec_id := NEW.{pk}::text;\n"
            f"    END IF;\n"
            f"    INSERT INTO replication_logs ({LOG_COLUMNS})\n"
            f"    VALUES (TG_TABLE_NAME,\n"
            f"            CASE TG_OP WHEN 'INSERT' THEN 0 WHEN 'UPDATE' THEN 1 ELSE 2 END,\n"
            f"            rec_id, rec_id, LOCALTIMESTAMP, false, {int(direction)},\n"
            f"            {self.literal(source_server)}, gen_random_uuid()::text);\n"
            f"    RETURN NULL;\n"
            f"END;\n"
            f"$$ LANGUAGE plpgsql"
        ]
        for _, event, sql_event in TRIGGER_EVENTS:
            statements.append(
                f"CREATE TRIGGER {self.quote(self.trigger_name(table_name, event))} "
                f"AFTER {sql_event} ON {self.quote(table_name)} "
                f"FOR EACH ROW EXECUTE FUNCTION {function}()"
            )
        return statements

    def generate_drop_trigger_statements(self, table_name: str) -> List[str]:
        table = self.quote(table_name)
        statements = [
            f"DROP TRIGGER IF EXISTS {self.quote(name)} ON {table}"
            for name in self.trigger_names(table_name)
        ]
        statements.append(f"DROP FUNCTION IF EXISTS {self.quote(self.function_name(table_name))}()")
        return statements

    def set_suppression(self, conn: Connection, enabled: bool) -> None:
        conn.execute(
            text("SELECT set_config(:name, :value, true)"),
            {'name': SETTING_NAME, 'value': '1' if enabled else '0'}
        )

    def truncate_table(self, conn: Connection, table_name: str) -> None:
        conn.exec_driver_sql("SET LOCAL session_replication_role = replica")
        try:
            conn.exec_driver_sql(f"TRUNCATE TABLE {self.quote(table_name)}")
        finally:
            conn.exec_driver_sql("SET LOCAL session_replication_role = DEFAULT")

    def bulk_insert(self, conn: Connection, table: Table, columns: Sequence[str],
                    rows: Iterable[Sequence[Any]]) -> int:
        """COPY ... FROM STDIN fed lazily from the encoded row stream."""
        encoder = DelimitedRecordEncoder(null_marker='', column_kinds=table_column_kinds(table, columns))
        stream = EncodedRowStream(rows, encoder)
        cols_str = ', '.join(self.quote(name) for name in columns)
        sql = f"COPY {self.quote(table.name)} ({cols_str}) FROM STDIN WITH (FORMAT csv, NULL '')"
        dbapi_connection = conn.connection.dbapi_connection
        with dbapi_connection.cursor() as cursor:
            cursor.copy_expert(sql, stream)
        return stream.rows_written
