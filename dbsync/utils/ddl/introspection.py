"""
Live table introspection through the SQLAlchemy inspector.

Types are normalized so that equivalent spellings compare equal:
- upper case, single spaces
- integer display width dropped (``INT(11)`` -> ``INT``)
- synonyms mapped to one name (``INTEGER`` -> ``INT``)
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from dbsync.models.schema import ColumnInfo, IndexInfo, TableSchema

logger = logging.getLogger(__name__)

# Spellings that mean the same type -> canonical name
TYPE_SYNONYMS: Dict[str, str] = {
    'INTEGER': 'INT',
    'INT4': 'INT',
    'INT8': 'BIGINT',
    'INT2': 'SMALLINT',
    'BOOL': 'BOOLEAN',
    'CHARACTER VARYING': 'VARCHAR',
    'CHARACTER': 'CHAR',
    'DOUBLE PRECISION': 'DOUBLE',
    'FLOAT8': 'DOUBLE',
    'FLOAT4': 'REAL',
    'NUMERIC': 'DECIMAL',
    'DEC': 'DECIMAL',
    'TIMESTAMP WITHOUT TIME ZONE': 'TIMESTAMP',
    'TIME WITHOUT TIME ZONE': 'TIME',
}

DISPLAY_WIDTH_RE = re.compile(r'^(TINYINT|SMALLINT|MEDIUMINT|INT|INTEGER|BIGINT)\s*\(\d+\)(.*)$')


def normalize_type(type_text: str) -> Tuple[str, str]:
    """
    Normalize a rendered column type.

    Args:
        type_text: Type as rendered by the dialect, e.g. ``int(11) unsigned``

    Returns:
        (base type, full type), e.g. ('INT', 'INT UNSIGNED')
    """
    text = ' '.join(str(type_text).upper().split())
    match = DISPLAY_WIDTH_RE.match(text)
    if match:
        text = match.group(1) + match.group(2)

    base = text.split('(')[0].strip()
    for modifier in (' UNSIGNED', ' ZEROFILL'):
        if base.endswith(modifier):
            base = base[:-len(modifier)].strip()

    canonical = TYPE_SYNONYMS.get(base, base)
    if canonical != base:
        text = canonical + text[len(base):]
    return canonical, text


def render_type(sql_type: Any, engine: Engine) -> str:
    try:
        return sql_type.compile(dialect=engine.dialect)
    except Exception:
        return str(sql_type)


class SchemaIntrospector:
    """Reads TableSchema snapshots from one database."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def table_exists(self, table_name: str) -> bool:
        return inspect(self.engine).has_table(table_name)

    def get_table_schema(self, table_name: str) -> Optional[TableSchema]:
        """
        Snapshot a table's columns, indexes, primary key and options.

        Returns:
            TableSchema, or None if the table does not exist
        """
        # fresh inspector per call: inspectors cache what they have read
        inspector = inspect(self.engine)
        if not inspector.has_table(table_name):
            return None

        pk_constraint = inspector.get_pk_constraint(table_name) or {}
        primary_key = list(pk_constraint.get('constrained_columns') or [])

        schema = TableSchema(table_name=table_name, primary_key=primary_key)
        for position, column in enumerate(inspector.get_columns(table_name), start=1):
            schema.columns.append(self._column_info(column, position))

        for index in inspector.get_indexes(table_name):
            name = index.get('name')
            columns = index.get('column_names') or []
            # expression indexes have no plain column list
            if not name or not columns or any(c is None for c in columns):
                continue
            if name == pk_constraint.get('name') or name.upper() == 'PRIMARY':
                continue
            schema.indexes.append(IndexInfo(
                index_name=name,
                column_names=list(columns),
                is_unique=bool(index.get('unique')),
                index_type=(index.get('dialect_options') or {}).get('mysql_using'),
            ))

        try:
            options = inspector.get_table_options(table_name)
        except NotImplementedError:
            options = {}
        schema.engine = options.get('mysql_engine')
        schema.charset = options.get('mysql_default charset')
        schema.collation = options.get('mysql_collate')
        return schema

    def _column_info(self, column: Dict[str, Any], position: int) -> ColumnInfo:
        sql_type = column['type']
        base, full = normalize_type(render_type(sql_type, self.engine))

        default = column.get('default')
        default = str(default) if default is not None else None
        is_auto_increment = column.get('autoincrement') is True
        if default and default.lower().startswith('nextval('):
            is_auto_increment = True
            default = None

        return ColumnInfo(
            column_name=column['name'],
            data_type=base,
            full_data_type=full,
            is_nullable=bool(column.get('nullable', True)),
            default_value=default,
            is_auto_increment=is_auto_increment,
            comment=column.get('comment'),
            max_length=getattr(sql_type, 'length', None),
            numeric_precision=getattr(sql_type, 'precision', None),
            numeric_scale=getattr(sql_type, 'scale', None),
            ordinal_position=position,
            sql_type=sql_type,
        )
