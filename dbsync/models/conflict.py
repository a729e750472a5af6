"""
Conflict detection results.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .log import ReplicationLogEntry, ReplicationOperation


class ConflictType(str, Enum):
    CONCURRENT_UPDATE = 'ConcurrentUpdate'
    DELETE_AFTER_UPDATE = 'DeleteAfterUpdate'
    UPDATE_AFTER_DELETE = 'UpdateAfterDelete'
    DUPLICATE_INSERT = 'DuplicateInsert'
    VERSION_MISMATCH = 'VersionMismatch'

    @classmethod
    def classify(cls, source_op: ReplicationOperation, target_op: ReplicationOperation) -> 'ConflictType':
        """Classify by the (source, target) operation pair."""
        pairs = {
            (ReplicationOperation.UPDATE, ReplicationOperation.UPDATE): cls.CONCURRENT_UPDATE,
            (ReplicationOperation.DELETE, ReplicationOperation.UPDATE): cls.DELETE_AFTER_UPDATE,
            (ReplicationOperation.UPDATE, ReplicationOperation.DELETE): cls.UPDATE_AFTER_DELETE,
            (ReplicationOperation.INSERT, ReplicationOperation.INSERT): cls.DUPLICATE_INSERT,
        }
        return pairs.get((source_op, target_op), cls.VERSION_MISMATCH)


class ConflictResolutionResult(str, Enum):
    RESOLVED_AUTOMATICALLY = 'ResolvedAutomatically'
    REQUIRES_MANUAL_REVIEW = 'RequiresManualReview'
    FAILED = 'Failed'
    SKIPPED = 'Skipped'


@dataclass
class DataConflict:
    """
    A write-write conflict between a change about to be applied (source) and
    a change captured on the target side.
    """
    table_name: str
    record_id: str
    source_entry: ReplicationLogEntry
    target_entry: ReplicationLogEntry
    conflict_type: ConflictType
    detected_at: datetime
    resolution: Optional[ConflictResolutionResult] = None
    resolved_entry: Optional[ReplicationLogEntry] = None
    reason: str = ''

    @property
    def source_wins(self) -> bool:
        return (
            self.resolution == ConflictResolutionResult.RESOLVED_AUTOMATICALLY
            and self.resolved_entry == self.source_entry
        )

    def details(self) -> Dict[str, Any]:
        return {
            'source_entry': self.source_entry.to_dict(),
            'target_entry': self.target_entry.to_dict(),
            'winner': self.resolved_entry.to_dict() if self.resolved_entry else None,
            'reason': self.reason,
        }
