"""
Prometheus metrics for the replication engine
"""
from prometheus_client import Counter, Histogram, Gauge, Info

# ====================================
# CHANGE APPLICATION METRICS
# ====================================
replication_entries_applied = Counter(
    'dbsync_replication_entries_applied_total',
    'Total number of log entries applied to the target database',
    ['table_name', 'direction', 'operation']  # operation: insert/update/delete
)

replication_entries_skipped = Counter(
    'dbsync_replication_entries_skipped_total',
    'Entries acknowledged without a write (already converged, lost a conflict, superseded)',
    ['table_name', 'direction']
)

replication_entries_failed = Counter(
    'dbsync_replication_entries_failed_total',
    'Entries recorded in the failure ledger',
    ['table_name', 'direction']
)

replication_batch_duration = Histogram(
    'dbsync_replication_batch_duration_seconds',
    'Time taken to process one polling batch',
    ['table_name', 'direction'],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, float("inf"))
)

replication_cursor_position = Gauge(
    'dbsync_replication_cursor_position',
    'Last synced log id per stream',
    ['table_name', 'direction']
)

replication_ticks_skipped = Counter(
    'dbsync_replication_ticks_skipped_total',
    'Periodic ticks skipped because the previous run was still busy',
    ['task_key']
)

# ====================================
# CONFLICT METRICS
# ====================================
replication_conflicts_total = Counter(
    'dbsync_replication_conflicts_total',
    'Detected conflicts by type and resolution',
    ['table_name', 'conflict_type', 'resolution']
)

# ====================================
# SCHEMA SYNC METRICS
# ====================================
schema_sync_statements_total = Counter(
    'dbsync_schema_sync_statements_total',
    'DDL statements executed by the schema synchronizer',
    ['table_name', 'status']  # status: success/failed
)

# ====================================
# INITIAL LOAD METRICS
# ====================================
initial_load_rows_total = Counter(
    'dbsync_initial_load_rows_total',
    'Rows copied by the bulk initial loader',
    ['table_name']
)

initial_load_duration = Histogram(
    'dbsync_initial_load_duration_seconds',
    'Time taken to bulk load one table',
    ['table_name'],
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0, 1800.0, 3600.0, float("inf"))
)

# ====================================
# MAINTENANCE METRICS
# ====================================
cleanup_deleted_rows_total = Counter(
    'dbsync_cleanup_deleted_rows_total',
    'Rows removed by the retention cleanup',
    ['database', 'kind']  # kind: logs/orphaned_status
)

dbsync_system_info = Info(
    'dbsync_system',
    'Replication engine information'
)

dbsync_system_info.info({
    'version': '1.0.0',
})
