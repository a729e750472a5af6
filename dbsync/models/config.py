"""
Replication policy: per-table configuration and global settings.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from dbsync.exceptions import ConfigurationError
from .log import ReplicationDirection


class ConflictResolutionStrategy(str, Enum):
    """How a bidirectional table settles write-write conflicts."""
    PREFER_LEADER = 'PreferLeader'
    PREFER_FOLLOWER = 'PreferFollower'
    LAST_WRITE_WINS = 'LastWriteWins'
    CUSTOM = 'Custom'
    FIELD_PRIORITY = 'FieldPriority'
    MANUAL_REVIEW = 'ManualReview'


class TableSyncMode(str, Enum):
    """Entity: registered record class. NoEntity: reflected column maps."""
    ENTITY = 'Entity'
    NO_ENTITY = 'NoEntity'


class SchemaSyncStrategy(str, Enum):
    DISABLED = 'Disabled'
    ON_STARTUP = 'OnStartup'
    PERIODIC = 'Periodic'
    ON_STARTUP_AND_PERIODIC = 'OnStartupAndPeriodic'

    @property
    def runs_on_startup(self) -> bool:
        return self in (SchemaSyncStrategy.ON_STARTUP, SchemaSyncStrategy.ON_STARTUP_AND_PERIODIC)

    @property
    def runs_periodically(self) -> bool:
        return self in (SchemaSyncStrategy.PERIODIC, SchemaSyncStrategy.ON_STARTUP_AND_PERIODIC)


DIRECTION_NAMES = {
    'leadertofollower': ReplicationDirection.LEADER_TO_FOLLOWER,
    'followertoleader': ReplicationDirection.FOLLOWER_TO_LEADER,
    'bidirectional': ReplicationDirection.BIDIRECTIONAL,
}

DEFAULT_PRIORITY_FIELDS = (
    'version', 'Version',
    'row_version', 'RowVersion',
    'updated_at', 'UpdatedAt',
    'modified_time', 'ModifiedTime',
)

IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def _normalize_name(value: Any) -> str:
    return re.sub(r'[\s_\-]', '', str(value)).lower()


def parse_direction(value: Any) -> ReplicationDirection:
    """
    Parse a direction from its name or number.

    Raises:
        ConfigurationError: If the value names no direction
    """
    if isinstance(value, ReplicationDirection):
        return value
    if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
        try:
            return ReplicationDirection(int(value))
        except ValueError:
            pass
    direction = DIRECTION_NAMES.get(_normalize_name(value))
    if direction is None:
        raise ConfigurationError(f"Invalid replication direction: {value!r}")
    return direction


def _parse_enum(enum_cls, value: Any):
    if isinstance(value, enum_cls):
        return value
    wanted = _normalize_name(value)
    for member in enum_cls:
        if _normalize_name(member.value) == wanted:
            return member
    raise ConfigurationError(f"Invalid {enum_cls.__name__} value: {value!r}")


def parse_strategy(value: Any) -> ConflictResolutionStrategy:
    return _parse_enum(ConflictResolutionStrategy, value)


def parse_sync_mode(value: Any) -> TableSyncMode:
    return _parse_enum(TableSyncMode, value)


def parse_schema_sync(value: Any) -> SchemaSyncStrategy:
    return _parse_enum(SchemaSyncStrategy, value)


@dataclass(frozen=True)
class TableConfig:
    """Replication policy for one table. Read-only during a run."""
    table_name: str
    primary_key: str = 'id'
    interval_seconds: float = 5.0
    enabled: bool = True
    initialize_existing_data: bool = True
    direction: ReplicationDirection = ReplicationDirection.LEADER_TO_FOLLOWER
    conflict_strategy: ConflictResolutionStrategy = ConflictResolutionStrategy.PREFER_LEADER
    priority_fields: Tuple[str, ...] = ()
    sync_mode: TableSyncMode = TableSyncMode.NO_ENTITY
    entity: Optional[str] = None
    schema_sync: SchemaSyncStrategy = SchemaSyncStrategy.ON_STARTUP
    schema_sync_interval_minutes: float = 60.0
    allow_schema_changes: bool = True

    @property
    def is_bidirectional(self) -> bool:
        return self.direction == ReplicationDirection.BIDIRECTIONAL

    @property
    def replicates_to_follower(self) -> bool:
        return self.direction in (ReplicationDirection.LEADER_TO_FOLLOWER, ReplicationDirection.BIDIRECTIONAL)

    @property
    def replicates_to_leader(self) -> bool:
        return self.direction in (ReplicationDirection.FOLLOWER_TO_LEADER, ReplicationDirection.BIDIRECTIONAL)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], warnings: Optional[List[str]] = None) -> 'TableConfig':
        """
        Build a TableConfig from a settings dict (upper-case keys).

        An unknown conflict strategy falls back to PreferLeader and appends a
        message to ``warnings``; an unknown direction or sync mode raises.

        Raises:
            ConfigurationError: If the table cannot be replicated as configured
        """
        warnings = warnings if warnings is not None else []
        name = data.get('NAME')
        if not name or not IDENTIFIER_RE.match(str(name)):
            raise ConfigurationError(f"Invalid table name: {name!r}")

        primary_key = data.get('PRIMARY_KEY', 'id')
        if not primary_key or not IDENTIFIER_RE.match(str(primary_key)):
            raise ConfigurationError(f"Table {name}: invalid primary key {primary_key!r}")

        direction = parse_direction(data.get('DIRECTION', 'LeaderToFollower'))

        try:
            strategy = parse_strategy(data.get('CONFLICT_STRATEGY', 'PreferLeader'))
        except ConfigurationError:
            warnings.append(
                f"Table {name}: invalid conflict strategy {data.get('CONFLICT_STRATEGY')!r}, "
                f"using PreferLeader"
            )
            strategy = ConflictResolutionStrategy.PREFER_LEADER

        entity = data.get('ENTITY')
        default_mode = TableSyncMode.ENTITY if entity else TableSyncMode.NO_ENTITY
        sync_mode = parse_sync_mode(data['SYNC_MODE']) if data.get('SYNC_MODE') else default_mode
        if sync_mode == TableSyncMode.ENTITY and not entity:
            raise ConfigurationError(f"Table {name}: Entity sync mode requires ENTITY")

        interval = float(data.get('INTERVAL_SECONDS', 5))
        if interval <= 0:
            raise ConfigurationError(f"Table {name}: INTERVAL_SECONDS must be positive")

        return cls(
            table_name=name,
            primary_key=primary_key,
            interval_seconds=interval,
            enabled=bool(data.get('ENABLED', True)),
            initialize_existing_data=bool(data.get('INITIALIZE_EXISTING_DATA', True)),
            direction=direction,
            conflict_strategy=strategy,
            priority_fields=tuple(data.get('PRIORITY_FIELDS') or ()),
            sync_mode=sync_mode,
            entity=entity,
            schema_sync=parse_schema_sync(data.get('SCHEMA_SYNC', 'OnStartup')),
            schema_sync_interval_minutes=float(data.get('SCHEMA_SYNC_INTERVAL_MINUTES', 60)),
            allow_schema_changes=bool(data.get('ALLOW_SCHEMA_CHANGES', True)),
        )


@dataclass
class DatabaseTarget:
    """Connection target for the leader, the follower or the read replica."""
    name: str
    url: Optional[str] = None
    engine: str = 'mysql'
    host: str = 'localhost'
    port: Optional[int] = None
    user: str = ''
    password: str = ''
    encrypted_password: str = ''
    database: str = ''
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'DatabaseTarget':
        if not data:
            raise ConfigurationError(f"Missing connection settings for {name}")
        return cls(
            name=name,
            url=data.get('URL'),
            engine=str(data.get('ENGINE', 'mysql')).lower(),
            host=data.get('HOST', 'localhost'),
            port=data.get('PORT'),
            user=data.get('USER', ''),
            password=data.get('PASSWORD', ''),
            encrypted_password=data.get('ENCRYPTED_PASSWORD', ''),
            database=data.get('NAME', ''),
            options=dict(data.get('OPTIONS', {})),
        )


@dataclass
class ReplicationSettings:
    """Global replication settings plus the table list."""
    follower_server_id: str
    leader: DatabaseTarget
    follower: DatabaseTarget
    leader_read_replica: Optional[DatabaseTarget] = None
    tables: List[TableConfig] = field(default_factory=list)
    batch_size: int = 1000
    data_retention_days: int = 30
    cleanup_interval_hours: float = 24.0
    conflict_window_seconds: float = 30.0
    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    initial_load_window_size: int = 5000
    initial_load_window_concurrency: int = 4
    initial_load_table_concurrency: int = 3
    initial_load_retry_base_seconds: float = 5.0
    custom_conflict_resolver: Optional[str] = None
    leader_server_name: str = 'leader'
    stream_lock_timeout_seconds: float = 600.0

    @property
    def leader_status_table(self) -> str:
        return f"replication_status_{self.follower_server_id}"

    @property
    def follower_status_table(self) -> str:
        return f"replication_status_{self.follower_server_id}_to_leader"

    def cursor_key(self, direction: ReplicationDirection) -> str:
        if direction == ReplicationDirection.FOLLOWER_TO_LEADER:
            return f"{self.follower_server_id}_to_leader"
        return self.follower_server_id

    def get_table(self, table_name: str) -> Optional[TableConfig]:
        for table in self.tables:
            if table.table_name == table_name:
                return table
        return None

    @property
    def enabled_tables(self) -> List[TableConfig]:
        return [t for t in self.tables if t.enabled]
