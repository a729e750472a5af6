"""
Replication data types.

The engine keeps its state in the leader and follower databases through
SQLAlchemy Core (see dbsync.utils.log_store), so there are no Django ORM
models here.
"""

from .config import (
    ConflictResolutionStrategy,
    DatabaseTarget,
    ReplicationSettings,
    SchemaSyncStrategy,
    TableConfig,
    TableSyncMode,
)
from .conflict import ConflictResolutionResult, ConflictType, DataConflict
from .log import (
    ManualRetryResult,
    ReplicationDirection,
    ReplicationFailureLog,
    ReplicationLogEntry,
    ReplicationOperation,
    SyncGap,
    SyncProgress,
)
from .records import GenericRecord, RecordRegistry, ReplicableModel, ReplicableRecord, TypedRecord
from .schema import (
    ColumnInfo,
    ColumnModification,
    IndexInfo,
    SchemaSyncResult,
    TableSchema,
    TableSchemaDifference,
)

__all__ = [
    'ConflictResolutionStrategy',
    'DatabaseTarget',
    'ReplicationSettings',
    'SchemaSyncStrategy',
    'TableConfig',
    'TableSyncMode',
    'ConflictResolutionResult',
    'ConflictType',
    'DataConflict',
    'ManualRetryResult',
    'ReplicationDirection',
    'ReplicationFailureLog',
    'ReplicationLogEntry',
    'ReplicationOperation',
    'SyncGap',
    'SyncProgress',
    'GenericRecord',
    'RecordRegistry',
    'ReplicableModel',
    'ReplicableRecord',
    'TypedRecord',
    'ColumnInfo',
    'ColumnModification',
    'IndexInfo',
    'SchemaSyncResult',
    'TableSchema',
    'TableSchemaDifference',
]
