"""
Change log types: operations, directions and log entries.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, Optional


class ReplicationOperation(IntEnum):
    """Row-level operation captured by the change triggers."""
    INSERT = 0
    UPDATE = 1
    DELETE = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()


class ReplicationDirection(IntEnum):
    """
    Replication direction.

    BIDIRECTIONAL is a table configuration value only; log rows are always
    written with LEADER_TO_FOLLOWER or FOLLOWER_TO_LEADER.
    """
    LEADER_TO_FOLLOWER = 0
    FOLLOWER_TO_LEADER = 1
    BIDIRECTIONAL = 2

    @property
    def label(self) -> str:
        return {
            ReplicationDirection.LEADER_TO_FOLLOWER: 'LeaderToFollower',
            ReplicationDirection.FOLLOWER_TO_LEADER: 'FollowerToLeader',
            ReplicationDirection.BIDIRECTIONAL: 'Bidirectional',
        }[self]

    @property
    def opposite(self) -> 'ReplicationDirection':
        if self == ReplicationDirection.LEADER_TO_FOLLOWER:
            return ReplicationDirection.FOLLOWER_TO_LEADER
        if self == ReplicationDirection.FOLLOWER_TO_LEADER:
            return ReplicationDirection.LEADER_TO_FOLLOWER
        raise ValueError("Bidirectional has no opposite direction")


@dataclass(frozen=True)
class ReplicationLogEntry:
    """
    One captured row-level change.

    Attributes:
        id: Monotonic id assigned by the database that owns the log
        table_name: Replicated table
        operation_type: Insert, Update or Delete
        record_id: Stringified primary key value
        timestamp: Capture time (database clock)
        direction: LEADER_TO_FOLLOWER or FOLLOWER_TO_LEADER
        source_server: Name of the server that captured the change
        operation_id: Opaque dedup token
        data: Payload column (the stringified primary key for trigger rows)
        processed: True for rows written already applied
    """
    id: int
    table_name: str
    operation_type: ReplicationOperation
    record_id: str
    timestamp: datetime
    direction: ReplicationDirection
    source_server: str = ''
    operation_id: str = ''
    data: Optional[str] = None
    processed: bool = False

    @classmethod
    def from_row(cls, row: Any) -> 'ReplicationLogEntry':
        """Build an entry from a result row of the replication_logs table."""
        mapping = row._mapping if hasattr(row, '_mapping') else row
        return cls(
            id=int(mapping['id']),
            table_name=mapping['table_name'],
            operation_type=ReplicationOperation(int(mapping['operation_type'])),
            record_id=str(mapping['record_id']),
            timestamp=mapping['timestamp'],
            direction=ReplicationDirection(int(mapping['direction'])),
            source_server=mapping['source_server'] or '',
            operation_id=mapping['operation_id'] or '',
            data=mapping['data'],
            processed=bool(mapping['processed']),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'table_name': self.table_name,
            'operation_type': self.operation_type.label,
            'record_id': self.record_id,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'direction': self.direction.label,
            'source_server': self.source_server,
            'operation_id': self.operation_id,
        }

    def with_changes(self, **changes) -> 'ReplicationLogEntry':
        return replace(self, **changes)

    @property
    def record_key(self) -> str:
        return f"{self.table_name}:{self.record_id}"

    def __str__(self) -> str:
        return f"#{self.id} {self.operation_type.label} {self.table_name}[{self.record_id}]"


@dataclass
class SyncProgress:
    """Durable cursor for one (table, follower, direction) stream."""
    table_name: str
    follower_server_id: str
    last_synced_id: int = 0
    last_sync_time: Optional[datetime] = None


@dataclass
class ReplicationFailureLog:
    """An entry that exhausted its automatic retries."""
    id: int
    table_name: str
    operation_type: ReplicationOperation
    record_id: str
    error_message: str
    failure_time: datetime
    retry_count: int
    follower_server_id: str
    data: Optional[str] = None


@dataclass
class SyncGap:
    """Pending log entries behind a stream's cursor."""
    table_name: str
    direction: ReplicationDirection
    cursor: int
    latest_log_id: int
    pending_count: int
    last_sync_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table_name': self.table_name,
            'direction': self.direction.label,
            'cursor': self.cursor,
            'latest_log_id': self.latest_log_id,
            'pending_count': self.pending_count,
            'last_sync_time': self.last_sync_time.isoformat() if self.last_sync_time else None,
        }


@dataclass
class ManualRetryResult:
    """Outcome of an operator-triggered failure recovery."""
    success: bool
    message: str
    processed_count: int = 0
    processed_tables: list = field(default_factory=list)
