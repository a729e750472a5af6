"""
Exception hierarchy for the replication engine.
"""


class ReplicationError(Exception):
    """Base exception for replication errors."""
    pass


class ConfigurationError(ReplicationError):
    """Raised when replication settings are missing or invalid."""
    pass


class DatabaseConnectionError(ReplicationError):
    """Raised when database connection fails"""
    pass


class TransientError(ReplicationError):
    """Temporary error that should be retried."""
    pass


class PersistentError(ReplicationError):
    """Permanent error that requires manual intervention."""
    pass


class SchemaSyncError(ReplicationError):
    """Raised when a schema statement cannot be generated or executed."""
    pass


class BulkLoadError(ReplicationError):
    """Raised when a bulk load window or table load gives up."""
    pass


class StreamBusyError(ReplicationError):
    """Raised when another process holds the lease of a replication stream."""
    pass


# Persistent error patterns
PERSISTENT_ERROR_PATTERNS = (
    'authentication',
    'permission denied',
    'access denied',
    'invalid credentials',
    'table does not exist',
    "doesn't exist",
    'column does not exist',
    'no such table',
    'no such column',
    'unknown column',
    'invalid configuration',
)

# Transient error patterns
TRANSIENT_ERROR_PATTERNS = (
    'timeout',
    'timed out',
    'connection refused',
    'connection reset',
    'lost connection',
    'server has gone away',
    'temporarily unavailable',
    'deadlock',
    'lock wait',
    'database is locked',
    'try again',
)


def classify_error(error: Exception):
    """
    Classify error as transient or persistent.

    Transient errors (should retry):
    - Network timeouts
    - Database deadlocks and lock waits
    - Temporary connection issues

    Persistent errors (manual intervention):
    - Authentication failures
    - Missing tables/columns
    - Invalid configuration
    - Permission errors

    Args:
        error: Exception to classify

    Returns:
        TransientError or PersistentError class
    """
    if isinstance(error, (PersistentError, ConfigurationError)):
        return PersistentError
    if isinstance(error, TransientError):
        return TransientError

    error_str = str(error).lower()

    for pattern in PERSISTENT_ERROR_PATTERNS:
        if pattern in error_str:
            return PersistentError

    for pattern in TRANSIENT_ERROR_PATTERNS:
        if pattern in error_str:
            return TransientError

    # Default to transient for unknown errors
    return TransientError
