"""
Replication Service - main entry point for all replication operations.

Owns one follower's replication with its leader:
- starting/stopping the periodic pull-apply tasks of every table
- initial bulk load and full table resync
- schema synchronization (startup, periodic, manual)
- failure statistics and manual recovery
- retention cleanup and gap detection
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.utils.module_loading import import_string
from sqlalchemy.engine import Engine

from dbsync import metrics
from dbsync.conf import load_replication_settings
from dbsync.exceptions import ConfigurationError
from dbsync.logging_utils import log_batch_processed, log_operation, log_schema_sync
from dbsync.models.config import ReplicationSettings, SchemaSyncStrategy, TableConfig
from dbsync.models.log import ManualRetryResult, ReplicationDirection, SyncGap
from dbsync.models.records import RecordRegistry
from dbsync.models.schema import SchemaSyncResult
from dbsync.replication.applier import BatchResult, ChangeApplier, ReplicationChannel
from dbsync.replication.recovery import FailureRecovery, RecoveryStream
from dbsync.replication.retry import retry_call
from dbsync.replication.supervisor import ReplicationSupervisor
from dbsync.replication.validators import ReplicationValidator
from dbsync.utils.bulk_loader import BulkLoader
from dbsync.utils.database_utils import get_database_engine
from dbsync.utils.ddl import SchemaSynchronizer
from dbsync.utils.log_store import (
    ConflictLogStore,
    FailureLedger,
    ReplicationLogStore,
    StreamLockStore,
    SyncProgressStore,
    db_now,
    stream_lock_key,
)
from dbsync.utils.notification_utils import log_and_notify_error, send_error_notification
from dbsync.utils.triggers import TriggerInstaller

logger = logging.getLogger(__name__)

L2F = ReplicationDirection.LEADER_TO_FOLLOWER
F2L = ReplicationDirection.FOLLOWER_TO_LEADER

CLEANUP_KEY = 'cleanup'
TABLE_LOAD_ATTEMPTS = 3


def task_key(direction: ReplicationDirection, table_name: str) -> str:
    return f"{direction.label}_{table_name}"


def schema_task_key(table_name: str) -> str:
    return f"SchemaSync_{table_name}"


class ReplicationService:
    """
    Orchestrates all replication operations of one follower.

    Every operation returns ``(success, message)`` or a result object;
    table-level failures are reported, never raised.
    """

    def __init__(
        self,
        replication_settings: ReplicationSettings,
        leader_engine: Optional[Engine] = None,
        follower_engine: Optional[Engine] = None,
        read_replica_engine: Optional[Engine] = None,
        registry: Optional[RecordRegistry] = None,
        supervisor: Optional[ReplicationSupervisor] = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the service.

        Args:
            replication_settings: Parsed REPLICATION settings
            leader_engine: Leader engine (created from settings if omitted)
            follower_engine: Follower engine (created from settings if omitted)
            read_replica_engine: Leader read replica engine (optional)
            registry: Record classes of Entity-mode tables (built from settings if omitted)
            supervisor: Periodic task supervisor (created if omitted)
            sleep: Sleep function used by backoffs (injectable for tests)
            logger: Injected logger

        Raises:
            ValueError: If the follower id is empty
            ConfigurationError: If no usable table configuration remains
        """
        if replication_settings is None or not str(replication_settings.follower_server_id or '').strip():
            raise ValueError("follower_server_id is required")
        if not replication_settings.tables:
            raise ConfigurationError("No table configurations provided")

        self.settings = replication_settings
        self.follower_id = replication_settings.follower_server_id
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep

        self._owned_engines: List[Engine] = []
        self.leader_engine = leader_engine or self._create_engine(replication_settings.leader)
        self.follower_engine = follower_engine or self._create_engine(replication_settings.follower)
        self.read_replica_engine = read_replica_engine
        if self.read_replica_engine is None and replication_settings.leader_read_replica:
            self.read_replica_engine = self._create_engine(replication_settings.leader_read_replica)

        # Entity-mode tables whose record class cannot be loaded are excluded
        if registry is None:
            registry, errors = RecordRegistry.from_table_configs(replication_settings.tables, self.logger)
        else:
            errors = {
                t.table_name: f"No record class registered for {t.table_name}"
                for t in replication_settings.tables
                if t.entity and t.table_name not in registry
            }
        self.registry = registry
        self.table_errors: Dict[str, str] = dict(errors)
        for table_name, error in errors.items():
            self._log_error(f"Excluding table {table_name}: {error}")

        self.tables: Dict[str, TableConfig] = {
            t.table_name: t for t in replication_settings.tables if t.table_name not in errors
        }
        if not self.tables:
            raise ConfigurationError("No usable table configurations")

        custom_resolver = None
        if replication_settings.custom_conflict_resolver:
            try:
                custom_resolver = import_string(replication_settings.custom_conflict_resolver)
            except ImportError as e:
                raise ConfigurationError(f"Cannot load custom conflict resolver: {e}")

        # State stores: leader log + status for leader->follower, follower log
        # + status for follower->leader; cursors, ledger and audit on the follower
        self.leader_store = ReplicationLogStore(self.leader_engine, replication_settings.leader_status_table, self.logger)
        self.follower_store = ReplicationLogStore(
            self.follower_engine, replication_settings.follower_status_table, self.logger
        )
        self.progress = SyncProgressStore(self.follower_engine)
        self.ledger = FailureLedger(self.follower_engine)
        self.conflict_log = ConflictLogStore(self.follower_engine)
        self.stream_locks = StreamLockStore(
            self.follower_engine, lease_seconds=replication_settings.stream_lock_timeout_seconds
        )

        self.channels = {
            L2F: ReplicationChannel(
                direction=L2F,
                source_engine=self.leader_engine,
                target_engine=self.follower_engine,
                source_store=self.leader_store,
                target_store=self.follower_store,
                cursor_key=replication_settings.cursor_key(L2F),
                read_engine=self.read_replica_engine,
            ),
            F2L: ReplicationChannel(
                direction=F2L,
                source_engine=self.follower_engine,
                target_engine=self.leader_engine,
                source_store=self.follower_store,
                target_store=self.leader_store,
                cursor_key=replication_settings.cursor_key(F2L),
            ),
        }
        self.appliers = {
            direction: ChangeApplier(
                channel=channel,
                progress=self.progress,
                ledger=self.ledger,
                conflict_log=self.conflict_log,
                registry=self.registry,
                batch_size=replication_settings.batch_size,
                conflict_window_seconds=replication_settings.conflict_window_seconds,
                max_attempts=replication_settings.max_retry_attempts,
                base_delay=replication_settings.retry_base_delay_seconds,
                custom_resolver=custom_resolver,
                follower_id=self.follower_id,
                sleep=sleep,
                logger=self.logger,
            )
            for direction, channel in self.channels.items()
        }

        self.recovery = FailureRecovery(
            ledger=self.ledger,
            progress=self.progress,
            streams={
                replication_settings.cursor_key(L2F): RecoveryStream(
                    self.leader_store, L2F, replication_settings.leader_server_name
                ),
                replication_settings.cursor_key(F2L): RecoveryStream(self.follower_store, F2L, self.follower_id),
            },
            locks=self.stream_locks,
            logger=self.logger,
        )

        self.schema_synchronizer = SchemaSynchronizer(self.leader_engine, self.follower_engine, logger=self.logger)
        self.schema_synchronizer_to_leader = SchemaSynchronizer(
            self.follower_engine, self.leader_engine, logger=self.logger
        )

        engines = {'leader': self.leader_engine, 'follower': self.follower_engine}
        if self.read_replica_engine is not None:
            engines['leader_read_replica'] = self.read_replica_engine
        self.validator = ReplicationValidator(replication_settings, engines, self.logger)

        self.supervisor = supervisor or ReplicationSupervisor(logger=self.logger, on_skip=self._on_tick_skipped)
        self.is_running = False
        self._lifecycle_lock = threading.Lock()

    # ==========================================
    # Helpers
    # ==========================================

    def _create_engine(self, target) -> Engine:
        engine = get_database_engine(target)
        self._owned_engines.append(engine)
        return engine

    def _log_info(self, message: str):
        """Log info message with structured format."""
        self.logger.info(f"[{self.follower_id}] {message}")

    def _log_warning(self, message: str):
        """Log warning message with structured format."""
        self.logger.warning(f"[{self.follower_id}] {message}")

    def _log_error(self, message: str):
        """Log error message with structured format."""
        self.logger.error(f"[{self.follower_id}] {message}")

    @staticmethod
    def _on_tick_skipped(key: str) -> None:
        metrics.replication_ticks_skipped.labels(task_key=key).inc()

    @property
    def enabled_tables(self) -> List[TableConfig]:
        return [t for t in self.tables.values() if t.enabled]

    def get_table(self, table_name: str) -> Optional[TableConfig]:
        return self.tables.get(table_name)

    def _directions(self, table_config: TableConfig) -> List[ReplicationDirection]:
        directions = []
        if table_config.replicates_to_follower:
            directions.append(L2F)
        if table_config.replicates_to_leader:
            directions.append(F2L)
        return directions

    def _task_keys(self, table_config: TableConfig) -> List[str]:
        keys = [task_key(direction, table_config.table_name) for direction in self._directions(table_config)]
        if table_config.schema_sync.runs_periodically:
            keys.append(schema_task_key(table_config.table_name))
        return keys

    # ==========================================
    # Lifecycle
    # ==========================================

    def ensure_state_tables(self) -> None:
        """Create the replication state tables on both databases if missing."""
        self.leader_store.ensure_tables()
        self.follower_store.ensure_tables()
        self.progress.ensure_tables()
        self.ledger.ensure_tables()
        self.conflict_log.ensure_tables()
        self.stream_locks.ensure_tables()

    def start_replication(self, initialize_data: bool = False) -> Tuple[bool, str]:
        """
        Start replication of every enabled table.

        FLOW:
        1. Validate connectivity
        2. Create the replication state tables
        3. Schema sync for startup-eligible tables (before any data task)
        4. Install capture triggers on both sides
        5. Optionally bulk load existing data
        6. Schedule data, periodic schema and cleanup tasks

        Args:
            initialize_data: Run the initial bulk load before scheduling

        Returns:
            (success, message)
        """
        with self._lifecycle_lock:
            if self.is_running:
                return False, "Replication is already running"

            self._log_info("=" * 60)
            self._log_info("STARTING REPLICATION")
            self._log_info("=" * 60)

            try:
                self._log_info("STEP 1/6: Validating prerequisites...")
                is_valid, errors = self.validator.validate_all()
                if not is_valid:
                    error_msg = f"Validation failed: {'; '.join(errors)}"
                    self._log_error(error_msg)
                    return False, error_msg
                for role, tables in self.validator.missing_tables().items():
                    self._log_warning(f"  → Tables missing on {role}: {', '.join(tables)}")

                self._log_info("STEP 2/6: Ensuring replication state tables...")
                self.ensure_state_tables()

                self._log_info("STEP 3/6: Synchronizing schemas of startup tables...")
                for table_config in self.enabled_tables:
                    if table_config.schema_sync.runs_on_startup:
                        result = self.sync_table_schema(table_config.table_name)
                        if not result.success:
                            self._log_warning(f"  → {result.error_message}")

                self._log_info("STEP 4/6: Installing capture triggers...")
                success, message = self.install_triggers()
                if not success:
                    self._log_warning(f"  → {message}")

                if initialize_data:
                    self._log_info("STEP 5/6: Loading existing data...")
                    success, message = self.initialize_existing_data()
                    if not success:
                        self._log_warning(f"  → {message}")
                else:
                    self._log_info("STEP 5/6: Initial load not requested, skipping")

                self._log_info("STEP 6/6: Scheduling replication tasks...")
                for table_config in self.enabled_tables:
                    self._schedule_table(table_config)
                self.supervisor.start(
                    CLEANUP_KEY,
                    self.settings.cleanup_interval_hours * 3600,
                    self.cleanup_old_logs,
                    run_immediately=False,
                )
                self.is_running = True

                message = f"Replication started for {len(self.enabled_tables)} tables"
                self._log_info(f"✓ {message}")
                return True, message

            except Exception as e:
                error_msg = f"Failed to start replication: {e}"
                log_and_notify_error(self.logger, "Replication startup failed", e,
                                     context={'follower': self.follower_id})
                self.supervisor.stop()
                return False, error_msg

    def _schedule_table(self, table_config: TableConfig) -> None:
        table_name = table_config.table_name
        for direction in self._directions(table_config):
            self.supervisor.start(
                task_key(direction, table_name),
                table_config.interval_seconds,
                lambda d=direction, t=table_name: self.process_stream(d, t),
            )
        if table_config.schema_sync.runs_periodically:
            self.supervisor.start(
                schema_task_key(table_name),
                table_config.schema_sync_interval_minutes * 60,
                lambda t=table_name: self.sync_table_schema(t),
                run_immediately=not table_config.schema_sync.runs_on_startup,
            )

    def stop_replication(self) -> Tuple[bool, str]:
        """Stop every periodic task; in-flight batches finish on their own."""
        with self._lifecycle_lock:
            if not self.is_running:
                return False, "Replication is not running"
            self.supervisor.stop()
            self.is_running = False
        self._log_info("✓ Replication stopped")
        return True, "Replication stopped"

    def close(self) -> None:
        if self.is_running:
            self.stop_replication()
        for engine in self._owned_engines:
            engine.dispose()
        self._owned_engines = []

    def install_triggers(self, force: bool = False) -> Tuple[bool, str]:
        """Install capture triggers on the leader and follower tables that need them."""
        installers = [
            TriggerInstaller(self.leader_engine, self.settings.leader_server_name, L2F, logger=self.logger),
            TriggerInstaller(self.follower_engine, self.follower_id, F2L, logger=self.logger),
        ]
        failures = []
        installed = 0
        for installer in installers:
            for table_name, (success, message) in installer.install_all(self.enabled_tables, force=force).items():
                if success:
                    installed += 1
                else:
                    failures.append(message)

        if failures:
            return False, f"Triggers ready on {installed} table sides; failed: {'; '.join(failures)}"
        return True, f"Triggers ready on {installed} table sides"

    # ==========================================
    # Data streams
    # ==========================================

    def process_stream(self, direction: ReplicationDirection, table_name: str) -> BatchResult:
        """
        One pull-apply-acknowledge cycle of a (table, direction) stream.

        Runs under the stream's lease in replication_stream_locks, so a tick
        in another process (a management command, a Celery worker) or a
        manual retry of the same stream makes this call a no-op reported
        as busy.
        """
        table_config = self.tables[table_name]
        channel = self.channels[direction]
        try:
            with self.stream_locks.hold(stream_lock_key(channel.cursor_key, table_name)) as acquired:
                if not acquired:
                    self.logger.debug(f"[{table_name}:{direction.label}] Stream locked elsewhere, skipping batch")
                    return BatchResult(table_name=table_name, direction=direction, busy=True)
                result = self.appliers[direction].process_batch(table_config)
        except Exception as e:
            self._log_error(f"[{table_name}:{direction.label}] Stream lease failed: {e}")
            return BatchResult(table_name=table_name, direction=direction, success=False, error=str(e))
        log_batch_processed(result)
        return result

    def pause_table_replication(self, table_name: str) -> Tuple[bool, str]:
        table_config = self.get_table(table_name)
        if table_config is None:
            return False, f"Unknown table: {table_name}"
        paused = [key for key in self._task_keys(table_config) if self.supervisor.pause(key)]
        if not paused:
            return False, f"No running replication tasks for {table_name}"
        self._log_info(f"Paused {table_name} ({', '.join(paused)})")
        return True, f"Replication paused for {table_name}"

    def resume_table_replication(self, table_name: str) -> Tuple[bool, str]:
        table_config = self.get_table(table_name)
        if table_config is None:
            return False, f"Unknown table: {table_name}"
        resumed = [key for key in self._task_keys(table_config) if self.supervisor.resume(key)]
        if not resumed:
            return False, f"No paused replication tasks for {table_name}"
        self._log_info(f"Resumed {table_name} ({', '.join(resumed)})")
        return True, f"Replication resumed for {table_name}"

    # ==========================================
    # Bulk load
    # ==========================================

    def _bulk_loader(self) -> BulkLoader:
        return BulkLoader(
            source_engine=self.leader_engine,
            target_engine=self.follower_engine,
            leader_store=self.leader_store,
            progress=self.progress,
            cursor_key=self.settings.cursor_key(L2F),
            read_engine=self.read_replica_engine,
            window_size=self.settings.initial_load_window_size,
            window_concurrency=self.settings.initial_load_window_concurrency,
            window_base_delay=self.settings.retry_base_delay_seconds,
            sleep=self.sleep,
            logger=self.logger,
        )

    def _load_table_with_retry(self, table_config: TableConfig) -> Tuple[bool, str]:
        table_name = table_config.table_name
        loader = self._bulk_loader()
        outcome = retry_call(
            lambda: loader.load_table(table_config),
            max_attempts=TABLE_LOAD_ATTEMPTS,
            base_delay=self.settings.initial_load_retry_base_seconds,
            sleep=self.sleep,
            description=f"[{table_name}] initial load",
            log=self.logger,
        )
        if outcome.ok:
            return True, f"{table_name}: {outcome.value} rows"
        return False, f"{table_name}: {outcome.error_message}"

    def initialize_existing_data(self, parallel: bool = True,
                                 max_concurrency: Optional[int] = None) -> Tuple[bool, str]:
        """
        Bulk load every enabled leader->follower table flagged for initialization.

        Args:
            parallel: Load tables concurrently
            max_concurrency: Tables loaded at the same time (defaults to settings)

        Returns:
            (success, message)
        """
        tables = [
            t for t in self.enabled_tables
            if t.initialize_existing_data and t.replicates_to_follower
        ]
        if not tables:
            return True, "No tables to initialize"

        concurrency = max(1, max_concurrency or self.settings.initial_load_table_concurrency)
        self._log_info("=" * 60)
        self._log_info(
            f"INITIAL LOAD: {len(tables)} tables "
            f"({'parallel x' + str(concurrency) if parallel else 'sequential'})"
        )
        self._log_info("=" * 60)

        with log_operation(self.logger, 'initialize_existing_data', tables_count=len(tables)):
            if parallel and len(tables) > 1:
                with ThreadPoolExecutor(max_workers=min(concurrency, len(tables))) as executor:
                    outcomes = list(executor.map(self._load_table_with_retry, tables))
            else:
                outcomes = [self._load_table_with_retry(t) for t in tables]

        failures = [message for success, message in outcomes if not success]
        if failures:
            error_msg = f"Initial load failed for {len(failures)}/{len(tables)} tables: {'; '.join(failures)}"
            self._log_error(error_msg)
            send_error_notification("Initial load failed", error_msg,
                                    context={'follower': self.follower_id}, include_traceback=False)
            return False, error_msg

        message = f"Initialized {len(tables)} tables"
        self._log_info(f"✓ {message}")
        return True, message

    def sync_table_from_leader_to_follower(self, table_name: str) -> Tuple[bool, str]:
        """Full resync of one table: pause its tasks, reload, resume."""
        table_config = self.get_table(table_name)
        if table_config is None:
            return False, f"Unknown table: {table_name}"
        if not table_config.replicates_to_follower:
            return False, f"{table_name} does not replicate from the leader"

        # Only tasks this call paused are resumed afterwards
        was_running = [key for key in self._task_keys(table_config) if self.supervisor.pause(key)]

        self._log_info(f"Resyncing {table_name} from leader...")
        try:
            success, message = self._load_table_with_retry(table_config)
        finally:
            for key in was_running:
                self.supervisor.resume(key)

        if success:
            self._log_info(f"✓ Resync complete: {message}")
            return True, f"Resynced {message}"
        self._log_error(f"Resync failed: {message}")
        return False, f"Resync failed: {message}"

    # ==========================================
    # Failures
    # ==========================================

    def manual_retry_failed_data(self, table_name: Optional[str] = None) -> ManualRetryResult:
        """Rewind and re-queue ledgered failures (optionally for one table)."""
        if table_name and table_name not in self.tables:
            return ManualRetryResult(success=False, message=f"Unknown table: {table_name}")
        with log_operation(self.logger, 'manual_retry_failed_data', table_name=table_name):
            result = self.recovery.manual_retry(table_name)
        if result.success:
            self._log_info(f"✓ {result.message}")
        else:
            self._log_error(result.message)
        return result

    def get_failed_data_statistics(self) -> Dict[str, Any]:
        return self.recovery.statistics()

    # ==========================================
    # Schema sync
    # ==========================================

    def _run_schema_sync(self, table_config: TableConfig, to_leader: bool) -> SchemaSyncResult:
        synchronizer = self.schema_synchronizer_to_leader if to_leader else self.schema_synchronizer
        result = synchronizer.sync_table(table_config)
        log_schema_sync(result)
        if result.executed_statements:
            for applier in self.appliers.values():
                applier.invalidate_table(table_config.table_name)
        return result

    def sync_table_schema(self, table_name: str, to_leader: bool = False) -> SchemaSyncResult:
        """Scheduled/startup schema sync; tables with schema sync Disabled are left alone."""
        table_config = self.get_table(table_name)
        if table_config is None:
            return SchemaSyncResult(success=False, table_name=table_name, error_message=f"Unknown table: {table_name}")
        if table_config.schema_sync == SchemaSyncStrategy.DISABLED:
            return SchemaSyncResult(success=True, table_name=table_name)
        return self._run_schema_sync(table_config, to_leader)

    def manual_sync_table_schema(self, table_name: str, to_leader: bool = False) -> SchemaSyncResult:
        """Operator schema sync; runs whatever the table's schema sync strategy."""
        table_config = self.get_table(table_name)
        if table_config is None:
            return SchemaSyncResult(success=False, table_name=table_name, error_message=f"Unknown table: {table_name}")
        return self._run_schema_sync(table_config, to_leader)

    def sync_all_table_schemas(self, to_leader: bool = False) -> Dict[str, SchemaSyncResult]:
        results = {}
        for table_config in self.enabled_tables:
            results[table_config.table_name] = self.sync_table_schema(table_config.table_name, to_leader)
        failed = [name for name, result in results.items() if not result.success]
        if failed:
            self._log_warning(f"Schema sync failed for: {', '.join(failed)}")
        return results

    # ==========================================
    # Maintenance
    # ==========================================

    def cleanup_old_logs(self) -> Dict[str, int]:
        """Delete expired log and status rows, then orphaned status rows, on both databases."""
        cutoff = db_now() - timedelta(days=self.settings.data_retention_days)
        deleted = {}
        for database, store in (('leader', self.leader_store), ('follower', self.follower_store)):
            logs = store.delete_older_than(cutoff)
            orphans = store.delete_orphaned_status()
            deleted[f"{database}_logs"] = logs
            deleted[f"{database}_orphaned_status"] = orphans
            metrics.cleanup_deleted_rows_total.labels(database=database, kind='logs').inc(logs)
            metrics.cleanup_deleted_rows_total.labels(database=database, kind='orphaned_status').inc(orphans)
        self._log_info(f"Cleanup before {cutoff:%Y-%m-%d %H:%M:%S}: {deleted}")
        return deleted

    def detect_synchronization_gaps(self) -> List[SyncGap]:
        """Streams with pending entries behind their cursor."""
        gaps = []
        for table_config in self.enabled_tables:
            for direction in self._directions(table_config):
                store = self.channels[direction].source_store
                progress = self.progress.get(table_config.table_name, self.settings.cursor_key(direction))
                pending = store.count_pending(table_config.table_name, direction, progress.last_synced_id)
                if not pending:
                    continue
                gaps.append(SyncGap(
                    table_name=table_config.table_name,
                    direction=direction,
                    cursor=progress.last_synced_id,
                    latest_log_id=store.latest_id(table_config.table_name, direction),
                    pending_count=pending,
                    last_sync_time=progress.last_sync_time,
                ))
        if gaps:
            self._log_warning(f"Detected {len(gaps)} synchronization gap(s)")
        return gaps

    def recover_synchronization_gaps(self) -> Dict[str, str]:
        """
        Run one immediate batch for every stream with a gap.

        Streams with a scheduled task go through the supervisor, so a tick
        already in progress makes the forced run a no-op. Without one (a
        management command or Celery worker) the stream lease does the same
        across processes.
        """
        outcomes = {}
        for gap in self.detect_synchronization_gaps():
            key = task_key(gap.direction, gap.table_name)
            if self.supervisor.get_task(key) is not None:
                ran = self.supervisor.run_once(key)
                outcomes[key] = 'processed' if ran else 'busy'
            else:
                result = self.process_stream(gap.direction, gap.table_name)
                if result.busy:
                    outcomes[key] = 'busy'
                elif result.success:
                    outcomes[key] = 'processed'
                else:
                    outcomes[key] = f"failed: {result.error or 'see ledger'}"
        return outcomes

    def get_status(self) -> Dict[str, Any]:
        return {
            'follower_server_id': self.follower_id,
            'is_running': self.is_running,
            'tables': {
                name: {
                    'enabled': t.enabled,
                    'direction': t.direction.label,
                    'conflict_strategy': t.conflict_strategy.value,
                    'sync_mode': t.sync_mode.value,
                }
                for name, t in self.tables.items()
            },
            'excluded_tables': dict(self.table_errors),
            'tasks': self.supervisor.get_status(),
            'cursors': [
                {
                    'table_name': p.table_name,
                    'follower_server_id': p.follower_server_id,
                    'last_synced_id': p.last_synced_id,
                    'last_sync_time': p.last_sync_time.isoformat() if p.last_sync_time else None,
                }
                for p in self.progress.all()
            ],
        }


def build_service(**kwargs) -> ReplicationService:
    """Create a ReplicationService from settings.REPLICATION."""
    return ReplicationService(load_replication_settings(), **kwargs)
