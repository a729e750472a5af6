"""
Record access for the change applier.

Replicable tables with a compiled type implement the ``ReplicableRecord``
capability (usually through the ``ReplicableModel`` mixin on a SQLAlchemy
declarative class) and are looked up in a ``RecordRegistry`` keyed by table
name. Tables without a compiled type are handled as ordered column maps.
The applier sees one tagged variant: ``TypedRecord | GenericRecord``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, Type, Union, runtime_checkable

from django.utils.module_loading import import_string
from sqlalchemy import Table, inspect as sa_inspect

from dbsync.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@runtime_checkable
class ReplicableRecord(Protocol):
    """Capability every typed replicable record provides."""

    def get_primary_key(self) -> Any:
        ...

    def apply_to(self, target: Any) -> None:
        ...

    def to_columns(self) -> Dict[str, Any]:
        ...

    @classmethod
    def from_columns(cls, columns: Dict[str, Any]) -> Any:
        ...

    @classmethod
    def parse_primary_key(cls, record_id: str) -> Any:
        ...


RECORD_CAPABILITIES = ('get_primary_key', 'apply_to', 'to_columns', 'from_columns', 'parse_primary_key')


def coerce_key_value(column, value: str) -> Any:
    """Convert a stringified key from the change log to the column's Python type."""
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if python_type is int:
        return int(value)
    if python_type is str:
        return value
    try:
        return python_type(value)
    except (TypeError, ValueError):
        return value


class ReplicableModel:
    """
    Mixin implementing ``ReplicableRecord`` for SQLAlchemy declarative classes.

    Example:
        class Order(ReplicableModel, Base):
            __tablename__ = 'orders'
            id = mapped_column(Integer, primary_key=True)
            status = mapped_column(String(20))
    """

    @classmethod
    def _column_attributes(cls) -> List[Tuple[Any, str]]:
        mapper = sa_inspect(cls)
        return [
            (column, mapper.get_property_by_column(column).key)
            for column in cls.__table__.columns
        ]

    def get_primary_key(self) -> Any:
        mapper = sa_inspect(type(self))
        values = tuple(
            getattr(self, mapper.get_property_by_column(column).key)
            for column in mapper.primary_key
        )
        return values[0] if len(values) == 1 else values

    def to_columns(self) -> Dict[str, Any]:
        return {column.name: getattr(self, attr) for column, attr in self._column_attributes()}

    @classmethod
    def from_columns(cls, columns: Dict[str, Any]) -> 'ReplicableModel':
        kwargs = {
            attr: columns[column.name]
            for column, attr in cls._column_attributes()
            if column.name in columns
        }
        return cls(**kwargs)

    def apply_to(self, target: 'ReplicableModel') -> None:
        """Copy every scalar column except the primary key onto ``target``."""
        for column, attr in self._column_attributes():
            if column.primary_key:
                continue
            setattr(target, attr, getattr(self, attr))

    @classmethod
    def parse_primary_key(cls, record_id: str) -> Any:
        pk_columns = list(cls.__table__.primary_key.columns)
        if len(pk_columns) != 1:
            raise ConfigurationError(f"{cls.__name__} must have a single-column primary key")
        return coerce_key_value(pk_columns[0], record_id)


@dataclass
class TypedRecord:
    """A record bound to a registered record class."""
    record_type: Type[Any]
    primary_key: Any
    instance: Optional[Any] = None


@dataclass
class GenericRecord:
    """A record as an ordered column -> value map over a reflected table."""
    table: Table
    primary_key: Dict[str, Any]
    values: Optional[Dict[str, Any]] = None


SourceRecord = Union[TypedRecord, GenericRecord]


class RecordRegistry:
    """Table name -> record class, built once at startup."""

    def __init__(self):
        self._records: Dict[str, Type[Any]] = {}

    def register(self, table_name: str, record_type: Type[Any]) -> None:
        missing = [name for name in RECORD_CAPABILITIES if not hasattr(record_type, name)]
        if missing:
            raise ConfigurationError(
                f"{record_type.__name__} cannot replicate {table_name}: missing {', '.join(missing)}"
            )
        self._records[table_name] = record_type

    def get(self, table_name: str) -> Optional[Type[Any]]:
        return self._records.get(table_name)

    def __contains__(self, table_name: str) -> bool:
        return table_name in self._records

    def __len__(self) -> int:
        return len(self._records)

    @property
    def table_names(self) -> List[str]:
        return sorted(self._records)

    @classmethod
    def from_table_configs(cls, table_configs: Iterable, log: Optional[logging.Logger] = None
                           ) -> Tuple['RecordRegistry', Dict[str, str]]:
        """
        Import and register the ENTITY classes of Entity-mode tables.

        Returns:
            (registry, errors) where errors maps table name -> message for
            tables whose record class could not be loaded
        """
        log = log or logger
        registry = cls()
        errors: Dict[str, str] = {}
        for table_config in table_configs:
            if not table_config.entity:
                continue
            try:
                registry.register(table_config.table_name, import_string(table_config.entity))
            except (ImportError, ConfigurationError) as e:
                errors[table_config.table_name] = f"Cannot load record class {table_config.entity}: {e}"
                log.error(f"[{table_config.table_name}] {errors[table_config.table_name]}")
        return registry, errors
