"""
Schema Synchronizer.

Converges a table's structure on the target database to its structure on
the source database (leader -> follower by default).

Flow of ``sync_table``:
1. Introspect both sides
2. Compare into a TableSchemaDifference
3. Generate statements in a fixed order:
   drop indexes, add columns, modify columns, drop columns, add indexes
4. Execute them one by one; the first failure aborts the table
"""

import logging
import time
from typing import List, Optional

from sqlalchemy import MetaData, Table
from sqlalchemy.engine import Engine
from sqlalchemy.schema import CreateIndex, CreateTable

from dbsync import metrics
from dbsync.exceptions import SchemaSyncError
from dbsync.models.config import TableConfig
from dbsync.models.schema import (
    ColumnInfo,
    ColumnModification,
    IndexInfo,
    SchemaSyncResult,
    TableSchema,
    TableSchemaDifference,
)
from dbsync.utils.adapters import BaseDatabaseAdapter, get_adapter
from .introspection import SchemaIntrospector

logger = logging.getLogger(__name__)


def _normalize_default(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    while len(text) >= 2 and text[0] == '(' and text[-1] == ')':
        text = text[1:-1].strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        text = text[1:-1]
    return text.casefold()


def compare_columns(source: ColumnInfo, target: ColumnInfo) -> List[str]:
    """Describe how ``target`` differs from ``source`` (empty if equal)."""
    changes = []
    if source.full_data_type != target.full_data_type:
        changes.append(f"type {target.full_data_type} -> {source.full_data_type}")
    if source.is_nullable != target.is_nullable:
        changes.append('nullable' if source.is_nullable else 'not null')
    if _normalize_default(source.default_value) != _normalize_default(target.default_value):
        changes.append(f"default {target.default_value!r} -> {source.default_value!r}")
    if source.is_auto_increment != target.is_auto_increment:
        changes.append('auto increment' if source.is_auto_increment else 'no auto increment')
    return changes


def _same_index(a: IndexInfo, b: IndexInfo) -> bool:
    return a.column_names == b.column_names and a.is_unique == b.is_unique


class SchemaSynchronizer:
    """
    Compares and converges table structures between two databases.

    The source is the side whose structure wins.
    """

    def __init__(self, source_engine: Engine, target_engine: Engine,
                 target_adapter: Optional[BaseDatabaseAdapter] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            source_engine: Database whose structure is authoritative
            target_engine: Database that gets converged
            target_adapter: Dialect adapter of the target (derived if omitted)
            logger: Injected logger
        """
        self.source_engine = source_engine
        self.target_engine = target_engine
        self.target_adapter = target_adapter or get_adapter(target_engine)
        self.source_introspector = SchemaIntrospector(source_engine)
        self.target_introspector = SchemaIntrospector(target_engine)
        self.logger = logger or logging.getLogger(__name__)

    # ==========================================
    # Comparison
    # ==========================================

    def compare(self, source: TableSchema, target: Optional[TableSchema]) -> TableSchemaDifference:
        """Compute what must change on ``target`` to match ``source``."""
        difference = TableSchemaDifference(table_name=source.table_name)
        if target is None:
            difference.table_missing = True
            return difference

        for column in source.columns:
            current = target.column(column.column_name)
            if current is None:
                difference.columns_to_add.append(column)
                continue
            changes = compare_columns(column, current)
            if not changes:
                continue
            if not self.target_adapter.supports_modify_column:
                difference.warnings.append(
                    f"Column {column.column_name} differs ({'; '.join(changes)}) but "
                    f"{self.target_adapter.db_type} cannot modify columns"
                )
                continue
            difference.columns_to_modify.append(ColumnModification(source=column, target=current, changes=changes))

        source_names = set(source.column_names)
        difference.columns_to_drop = [c for c in target.columns if c.column_name not in source_names]

        for index in source.indexes:
            current = target.index(index.index_name)
            if current is None:
                difference.indexes_to_add.append(index)
            elif not _same_index(index, current):
                difference.indexes_to_drop.append(current)
                difference.indexes_to_add.append(index)

        source_indexes = {i.index_name for i in source.indexes}
        difference.indexes_to_drop.extend(i for i in target.indexes if i.index_name not in source_indexes)

        if source.primary_key != target.primary_key:
            difference.warnings.append(
                f"Primary key differs ({target.primary_key} -> {source.primary_key}); not changed"
            )
        return difference

    def generate_statements(self, difference: TableSchemaDifference) -> List[str]:
        """Statements converging the target, in execution order."""
        adapter = self.target_adapter
        table_name = difference.table_name
        statements = []
        for index in difference.indexes_to_drop:
            statements.append(adapter.generate_drop_index(table_name, index.index_name))
        for column in difference.columns_to_add:
            statements.append(adapter.generate_add_column(table_name, column))
        for modification in difference.columns_to_modify:
            statements.extend(adapter.generate_modify_column(table_name, modification.source, modification.target))
        for column in difference.columns_to_drop:
            statements.append(adapter.generate_drop_column(table_name, column.column_name))
        for index in difference.indexes_to_add:
            statements.append(adapter.generate_add_index(table_name, index))
        return statements

    def generate_create_statements(self, table_name: str) -> List[str]:
        """CREATE TABLE plus CREATE INDEX statements compiled from the source definition."""
        table = Table(table_name, MetaData(), autoload_with=self.source_engine, resolve_fks=False)
        dialect = self.target_engine.dialect
        statements = [str(CreateTable(table).compile(dialect=dialect)).strip()]
        for index in sorted(table.indexes, key=lambda i: i.name or ''):
            statements.append(str(CreateIndex(index).compile(dialect=dialect)).strip())
        return statements

    def diff(self, table_name: str) -> TableSchemaDifference:
        """
        Compare the live structures of ``table_name``.

        Raises:
            SchemaSyncError: If the table does not exist on the source
        """
        source = self.source_introspector.get_table_schema(table_name)
        if source is None:
            raise SchemaSyncError(f"Source table {table_name} does not exist")
        return self.compare(source, self.target_introspector.get_table_schema(table_name))

    # ==========================================
    # Execution
    # ==========================================

    def _execute(self, table_name: str, statements: List[str], executed: List[str]) -> None:
        for statement in statements:
            success, error = self.target_adapter.execute_sql(statement)
            metrics.schema_sync_statements_total.labels(
                table_name=table_name, status='success' if success else 'failed'
            ).inc()
            if not success:
                raise SchemaSyncError(f"Statement failed: {statement[:200]}: {error}")
            executed.append(statement)

    def sync_table(self, table_config: TableConfig) -> SchemaSyncResult:
        """
        Converge one table. Never raises; errors are reported in the result.
        """
        table_name = table_config.table_name
        started = time.time()
        executed: List[str] = []
        difference = None

        try:
            difference = self.diff(table_name)
            for warning in difference.warnings:
                self.logger.warning(f"[{table_name}] Schema sync: {warning}")

            if not difference.has_differences:
                self.logger.debug(f"[{table_name}] Schema in sync")
                return SchemaSyncResult(
                    success=True,
                    table_name=table_name,
                    duration=time.time() - started,
                    applied_differences=difference,
                )

            if difference.table_missing:
                statements = self.generate_create_statements(table_name)
            else:
                statements = self.generate_statements(difference)

            if not table_config.allow_schema_changes:
                self.logger.warning(
                    f"[{table_name}] Schema differs but changes are not allowed: {difference.summary()}"
                )
                return SchemaSyncResult(
                    success=True,
                    table_name=table_name,
                    duration=time.time() - started,
                    applied_differences=difference,
                )

            self.logger.info(f"[{table_name}] Applying {len(statements)} schema statement(s)")
            self._execute(table_name, statements, executed)

            self.logger.info(f"[{table_name}] ✓ Schema synchronized ({len(executed)} statements)")
            return SchemaSyncResult(
                success=True,
                table_name=table_name,
                executed_statements=executed,
                duration=time.time() - started,
                applied_differences=difference,
            )

        except Exception as e:
            error_msg = f"Schema sync failed for {table_name}: {e}"
            self.logger.error(f"[{table_name}] {error_msg}")
            return SchemaSyncResult(
                success=False,
                table_name=table_name,
                executed_statements=executed,
                error_message=error_msg,
                duration=time.time() - started,
                applied_differences=difference,
            )
