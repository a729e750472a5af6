"""
Structural snapshots of tables and their pairwise differences.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ColumnInfo:
    """
    One column as introspected from a live table.

    Attributes:
        column_name: Column name
        data_type: Normalized base type (upper case, no display width)
        full_data_type: Type as the dialect renders it, e.g. VARCHAR(100)
        is_nullable: Whether NULL is allowed
        default_value: Server default as reflected (None if absent)
        is_auto_increment: Whether the column is auto-increment/serial
        comment: Column comment, if the dialect supports it
        max_length: Character length for string types
        numeric_precision: Precision for numeric types
        numeric_scale: Scale for numeric types
        ordinal_position: 1-based position in the table
        sql_type: Reflected SQLAlchemy type object (not compared)
    """
    column_name: str
    data_type: str
    full_data_type: str
    is_nullable: bool = True
    default_value: Optional[str] = None
    is_auto_increment: bool = False
    comment: Optional[str] = None
    max_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    ordinal_position: int = 0
    sql_type: Any = field(default=None, compare=False, repr=False)


@dataclass
class IndexInfo:
    index_name: str
    column_names: List[str]
    is_unique: bool = False
    is_primary: bool = False
    index_type: Optional[str] = None


@dataclass
class TableSchema:
    table_name: str
    columns: List[ColumnInfo] = field(default_factory=list)
    indexes: List[IndexInfo] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)
    engine: Optional[str] = None
    charset: Optional[str] = None
    collation: Optional[str] = None

    def column(self, name: str) -> Optional[ColumnInfo]:
        for col in self.columns:
            if col.column_name == name:
                return col
        return None

    def index(self, name: str) -> Optional[IndexInfo]:
        for idx in self.indexes:
            if idx.index_name == name:
                return idx
        return None

    @property
    def column_names(self) -> List[str]:
        return [col.column_name for col in self.columns]


@dataclass
class ColumnModification:
    """A column present on both sides whose definition differs."""
    source: ColumnInfo
    target: ColumnInfo
    changes: List[str] = field(default_factory=list)


@dataclass
class TableSchemaDifference:
    table_name: str
    columns_to_add: List[ColumnInfo] = field(default_factory=list)
    columns_to_modify: List[ColumnModification] = field(default_factory=list)
    columns_to_drop: List[ColumnInfo] = field(default_factory=list)
    indexes_to_add: List[IndexInfo] = field(default_factory=list)
    indexes_to_drop: List[IndexInfo] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    table_missing: bool = False

    @property
    def has_differences(self) -> bool:
        return bool(
            self.table_missing
            or self.columns_to_add
            or self.columns_to_modify
            or self.columns_to_drop
            or self.indexes_to_add
            or self.indexes_to_drop
        )

    def summary(self) -> Dict[str, Any]:
        return {
            'table_missing': self.table_missing,
            'columns_to_add': [c.column_name for c in self.columns_to_add],
            'columns_to_modify': [m.target.column_name for m in self.columns_to_modify],
            'columns_to_drop': [c.column_name for c in self.columns_to_drop],
            'indexes_to_add': [i.index_name for i in self.indexes_to_add],
            'indexes_to_drop': [i.index_name for i in self.indexes_to_drop],
            'warnings': list(self.warnings),
        }


@dataclass
class SchemaSyncResult:
    success: bool
    table_name: str
    executed_statements: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    duration: float = 0.0
    applied_differences: Optional[TableSchemaDifference] = None
