"""
Replication module - polling change replication between leader and follower.

This module provides:
- service.ReplicationService: Main entry point for all replication operations
- ChangeApplier: Pull-apply-acknowledge cycle of one stream
- ReplicationSupervisor: Single-flight periodic task scheduler
- ConflictDetector / ConflictResolver: Bidirectional conflict handling
- FailureRecovery: Manual retry of ledgered failures
- Validators: Pre-flight checks before operations
"""

from .applier import BatchResult, ChangeApplier, ReplicationChannel
from .conflicts import ConflictDetector, ConflictResolver
from .recovery import FailureRecovery, RecoveryStream
from .retry import Result, retry_call
from .supervisor import ReplicationSupervisor
from .validators import ReplicationValidator

__all__ = [
    'BatchResult',
    'ChangeApplier',
    'ReplicationChannel',
    'ConflictDetector',
    'ConflictResolver',
    'FailureRecovery',
    'RecoveryStream',
    'Result',
    'retry_call',
    'ReplicationSupervisor',
    'ReplicationValidator',
]
