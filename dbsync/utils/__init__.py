"""
Utility modules for database access, change capture and bulk loading
"""

from .database_utils import (
    build_connection_string,
    get_database_engine,
    test_database_connection,
)
from .log_store import (
    ConflictLogStore,
    FailureLedger,
    ReplicationLogStore,
    SyncProgressStore,
)
from .notification_utils import log_and_notify_error, send_error_notification

__all__ = [
    'build_connection_string',
    'get_database_engine',
    'test_database_connection',
    'ConflictLogStore',
    'FailureLedger',
    'ReplicationLogStore',
    'SyncProgressStore',
    'log_and_notify_error',
    'send_error_notification',
]
