"""
MySQL adapter.

Triggers honour the ``@is_replicating`` session variable; bulk loads go
through LOAD DATA LOCAL INFILE.
"""

import logging
import os
import tempfile
from typing import Any, Iterable, List, Sequence

from sqlalchemy import Table, text
from sqlalchemy.engine import Connection

from dbsync.models.log import ReplicationDirection
from dbsync.models.schema import ColumnInfo
from dbsync.utils.record_codec import BINARY, BIT, DelimitedRecordEncoder, table_column_kinds
from .base_adapter import BaseDatabaseAdapter, LOG_COLUMNS, TRIGGER_EVENTS

logger = logging.getLogger(__name__)


class MySQLAdapter(BaseDatabaseAdapter):
    """MySQL-specific replication SQL."""

    @property
    def db_type(self) -> str:
        return 'mysql'

    def column_definition(self, column: ColumnInfo) -> str:
        definition = super().column_definition(column)
        if column.is_auto_increment:
            definition += ' AUTO_INCREMENT'
        if column.comment:
            definition += f" COMMENT {self.literal(column.comment)}"
        return definition

    def generate_modify_column(self, table_name: str, column: ColumnInfo,
                               current: ColumnInfo) -> List[str]:
        """Generate MODIFY COLUMN statement for MySQL."""
        return [f"ALTER TABLE {self.quote(table_name)} MODIFY COLUMN {self.column_definition(column)}"]

    def generate_drop_index(self, table_name: str, index_name: str) -> str:
        """Generate DROP INDEX statement for MySQL."""
        return f"DROP INDEX {self.quote(index_name)} ON {self.quote(table_name)}"

    def trigger_exists(self, conn: Connection, trigger_name: str) -> bool:
        sql = text("""
            SELECT COUNT(*)
            FROM INFORMATION_SCHEMA.TRIGGERS
            WHERE TRIGGER_SCHEMA = DATABASE()
            AND TRIGGER_NAME = :trigger_name
        """)
        return bool(conn.execute(sql, {'trigger_name': trigger_name}).scalar())

    def generate_trigger_statements(self, table_name: str, primary_key: str,
                                    direction: ReplicationDirection, source_server: str) -> List[str]:
        statements = []
        for operation, event, sql_event in TRIGGER_EVENTS:
            row = 'OLD' if event == 'delete' else 'NEW'
            record_id = f"CAST({row}.{self.quote(primary_key)} AS CHAR(100))"
            statements.append(
                f"CREATE TRIGGER {self.quote(self.trigger_name(table_name, event))} "
                f"AFTER {sql_event} ON {self.quote(table_name)}\n"
                f"FOR EACH ROW\n"
                f"BEGIN\n"
                f"    IF @is_replicating = 0 OR @is_replicating IS NULL THEN\n"
                f"        INSERT INTO replication_logs ({LOG_COLUMNS})\n"
                f"        VALUES ({self.literal(table_name)}, {int(operation)}, {record_id}, {record_id}, "
                f"NOW(), 0, {int(direction)}, {self.literal(source_server)}, UUID());\n"
                f"    END IF;\n"
                f"END"
            )
        return statements

    def set_suppression(self, conn: Connection, enabled: bool) -> None:
        conn.exec_driver_sql(f"SET @is_replicating = {1 if enabled else 0}")

    def reset_session(self, conn: Connection) -> None:
        # user variables outlive the transaction on a pooled connection
        conn.exec_driver_sql("SET @is_replicating = 0")

    def truncate_table(self, conn: Connection, table_name: str) -> None:
        conn.exec_driver_sql("SET FOREIGN_KEY_CHECKS = 0")
        try:
            conn.exec_driver_sql(f"TRUNCATE TABLE {self.quote(table_name)}")
        finally:
            conn.exec_driver_sql("SET FOREIGN_KEY_CHECKS = 1")

    def load_data_statement(self, table: Table, columns: Sequence[str], path: str) -> str:
        """
        LOAD DATA statement for a stream file written with ``bulk_encoder``.

        BIT and binary columns are read into user variables: BIT values are
        cast from their decimal text, binary values decoded with UNHEX.
        LOAD DATA would otherwise store the text itself.
        """
        targets = []
        assignments = []
        for position, (name, kind) in enumerate(zip(columns, table_column_kinds(table, columns))):
            if kind == BIT:
                variable = f"@bit_{position}"
                assignments.append(f"{self.quote(name)} = CAST({variable} AS UNSIGNED)")
            elif kind == BINARY:
                variable = f"@bin_{position}"
                assignments.append(f"{self.quote(name)} = UNHEX({variable})")
            else:
                targets.append(self.quote(name))
                continue
            targets.append(variable)

        path = path.replace('\\', '/').replace("'", "''")
        sql = (
            f"LOAD DATA LOCAL INFILE '{path}' INTO TABLE {self.quote(table.name)} "
            f"CHARACTER SET utf8mb4 "
            f"FIELDS TERMINATED BY ',' OPTIONALLY ENCLOSED BY '\"' ESCAPED BY '' "
            f"LINES TERMINATED BY '\\n' "
            f"({', '.join(targets)})"
        )
        if assignments:
            sql += f" SET {', '.join(assignments)}"
        return sql

    def bulk_encoder(self, table: Table, columns: Sequence[str]) -> DelimitedRecordEncoder:
        return DelimitedRecordEncoder(
            null_marker='NULL', column_kinds=table_column_kinds(table, columns), binary_prefix=''
        )

    def bulk_insert(self, conn: Connection, table: Table, columns: Sequence[str],
                    rows: Iterable[Sequence[Any]]) -> int:
        """LOAD DATA LOCAL INFILE from a per-window stream file."""
        encoder = self.bulk_encoder(table, columns)
        handle = tempfile.NamedTemporaryFile('w', suffix='.csv', encoding='utf-8', newline='', delete=False)
        written = 0
        try:
            with handle:
                for line in encoder.iter_lines(rows):
                    handle.write(line)
                    written += 1
            if not written:
                return 0
            conn.exec_driver_sql(self.load_data_statement(table, columns, handle.name))
            return written
        finally:
            os.unlink(handle.name)
