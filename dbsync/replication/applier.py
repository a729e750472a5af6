"""
Change Applier - applies one polling batch of a (table, direction) stream.

Flow of ``process_batch``:
1. Pull pending log entries above the stream cursor (oldest first)
2. Bidirectional tables: detect and resolve conflicts, keep only winners
3. Collapse each record's entries to its final state
4. Apply in (timestamp, id) order inside one target transaction with the
   suppression flag set; each attempt of each entry runs in a SAVEPOINT
5. Acknowledge handled entries, ledger exhausted ones, advance the cursor
   (never past an entry still waiting for review or a retry)

A batch that cannot be applied at all (connection lost, suppression flag
could not be set) rolls back; its entries stay fetchable and the next tick
retries them.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import MetaData, Table, and_, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.orm import Session

from dbsync import metrics
from dbsync.exceptions import ConfigurationError, PersistentError
from dbsync.models.config import TableConfig, TableSyncMode
from dbsync.models.conflict import ConflictResolutionResult, DataConflict
from dbsync.models.log import ReplicationDirection, ReplicationLogEntry, ReplicationOperation
from dbsync.models.records import GenericRecord, RecordRegistry, SourceRecord, TypedRecord, coerce_key_value
from dbsync.replication.conflicts import ConflictDetector, ConflictResolver, CustomResolver
from dbsync.replication.dedup import DedupGroup, deduplicate_groups
from dbsync.replication.retry import Result, retry_call
from dbsync.utils.adapters import BaseDatabaseAdapter, get_adapter
from dbsync.utils.log_store import ConflictLogStore, FailureLedger, ReplicationLogStore, SyncProgressStore

logger = logging.getLogger(__name__)

MANUAL_REVIEW_MESSAGE = 'Conflict requires manual review'


class ApplyOutcome(str, Enum):
    APPLIED = 'applied'
    SKIPPED = 'skipped'


@dataclass
class ReplicationChannel:
    """
    Everything one replication direction touches.

    Attributes:
        direction: LEADER_TO_FOLLOWER or FOLLOWER_TO_LEADER
        source_engine: Database whose log is drained
        target_engine: Database the changes are written to
        source_store: Log + status table on the source database
        target_store: Log + status table on the target database (conflicts)
        cursor_key: sync_progress key of this stream
        read_engine: Engine used for source row reads (leader read replica)
        adapter: Dialect adapter of the target database
    """
    direction: ReplicationDirection
    source_engine: Engine
    target_engine: Engine
    source_store: ReplicationLogStore
    target_store: ReplicationLogStore
    cursor_key: str
    read_engine: Optional[Engine] = None
    adapter: Optional[BaseDatabaseAdapter] = None

    def __post_init__(self):
        if self.adapter is None:
            self.adapter = get_adapter(self.target_engine)

    @property
    def source_read_engine(self) -> Engine:
        return self.read_engine or self.source_engine

    @property
    def label(self) -> str:
        return self.direction.label


@dataclass
class BatchResult:
    """Counters of one processed batch."""
    table_name: str
    direction: ReplicationDirection
    fetched: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0
    cursor: int = 0
    success: bool = True
    error: Optional[str] = None
    duration: float = 0.0
    handled_ids: List[int] = field(default_factory=list)
    busy: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table_name': self.table_name,
            'direction': self.direction.label,
            'fetched': self.fetched,
            'applied': self.applied,
            'skipped': self.skipped,
            'failed': self.failed,
            'conflicts': self.conflicts,
            'cursor': self.cursor,
            'success': self.success,
            'error': self.error,
            'duration': round(self.duration, 3),
            'busy': self.busy,
        }


class ChangeApplier:
    """Applies pending log entries of one channel to its target database."""

    def __init__(
        self,
        channel: ReplicationChannel,
        progress: SyncProgressStore,
        ledger: FailureLedger,
        conflict_log: Optional[ConflictLogStore] = None,
        registry: Optional[RecordRegistry] = None,
        batch_size: int = 1000,
        conflict_window_seconds: float = 30.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        custom_resolver: Optional[CustomResolver] = None,
        follower_id: str = '',
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.channel = channel
        self.progress = progress
        self.ledger = ledger
        self.conflict_log = conflict_log
        self.registry = registry or RecordRegistry()
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.follower_id = follower_id
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

        self.detector = ConflictDetector(channel.target_store, conflict_window_seconds, self.logger)
        self.resolver = ConflictResolver(
            field_loader=self._load_conflict_fields,
            custom_resolver=custom_resolver,
            logger=self.logger,
        )

        self._tables: Dict[Tuple[int, str], Table] = {}
        self._tables_lock = threading.Lock()

    # ==========================================
    # Logging helpers
    # ==========================================

    def _log_info(self, table_name: str, message: str):
        self.logger.info(f"[{table_name}:{self.channel.label}] {message}")

    def _log_warning(self, table_name: str, message: str):
        self.logger.warning(f"[{table_name}:{self.channel.label}] {message}")

    def _log_error(self, table_name: str, message: str):
        self.logger.error(f"[{table_name}:{self.channel.label}] {message}")

    # ==========================================
    # Reflection cache
    # ==========================================

    def reflect_table(self, engine: Engine, table_name: str) -> Table:
        key = (id(engine), table_name)
        with self._tables_lock:
            table = self._tables.get(key)
        if table is None:
            try:
                table = Table(table_name, MetaData(), autoload_with=engine)
            except NoSuchTableError:
                raise PersistentError(f"Table {table_name} does not exist on {engine.url.database}")
            with self._tables_lock:
                self._tables[key] = table
        return table

    def invalidate_table(self, table_name: str) -> None:
        """Forget reflected definitions of a table (after schema changes)."""
        with self._tables_lock:
            for key in [k for k in self._tables if k[1] == table_name]:
                del self._tables[key]

    # ==========================================
    # Batch processing
    # ==========================================

    def process_batch(self, table_config: TableConfig) -> BatchResult:
        """
        Process one batch of pending entries for ``table_config``.

        Table-level problems never raise; they are reported in the result.
        """
        started = time.time()
        table_name = table_config.table_name
        direction = self.channel.direction
        result = BatchResult(table_name=table_name, direction=direction)

        try:
            cursor = self.progress.get(table_name, self.channel.cursor_key).last_synced_id
            entries = self.channel.source_store.fetch_pending(table_name, direction, cursor, self.batch_size)
        except Exception as e:
            self._log_error(table_name, f"Failed to fetch pending entries: {e}")
            result.success = False
            result.error = str(e)
            return result

        result.cursor = cursor
        result.fetched = len(entries)
        if not entries:
            return result

        self._log_info(table_name, f"Processing {len(entries)} pending entries after cursor {cursor}")

        try:
            candidates, lost, held, deferred = self._resolve_conflicts(table_config, entries, result)
            groups = deduplicate_groups(candidates)
            applied, skipped, failures = self._apply_groups(table_config, groups)
        except Exception as e:
            self._fail_batch(table_config, entries, e, result)
            result.duration = time.time() - started
            return result

        try:
            self._acknowledge(table_config, result, applied, skipped, lost, held, deferred, failures)
        except Exception as e:
            # writes are committed; the entries are re-applied idempotently next tick
            self._log_error(table_name, f"Failed to acknowledge batch: {e}")
            result.success = False
            result.error = str(e)
        result.duration = time.time() - started
        metrics.replication_batch_duration.labels(
            table_name=table_name, direction=direction.label
        ).observe(result.duration)

        self._log_info(
            table_name,
            f"✓ Batch done: {result.applied} applied, {result.skipped} skipped, {result.failed} failed, "
            f"{result.conflicts} conflicts, cursor {result.cursor} ({result.duration:.2f}s)"
        )
        return result

    def _resolve_conflicts(self, table_config: TableConfig, entries: List[ReplicationLogEntry],
                           result: BatchResult):
        """
        Split a batch into (to apply, lost, held, deferred).

        Held entries have a conflict under manual review and go to the
        failure ledger. Deferred entries had a resolution fail and are
        retried next tick. Neither is applied.
        """
        if not table_config.is_bidirectional:
            return list(entries), [], [], []

        candidates, lost, held, deferred = [], [], [], []
        for entry in entries:
            conflicts = self.detector.detect(entry)
            if not conflicts:
                candidates.append(entry)
                continue

            for conflict in conflicts:
                self.resolver.resolve(conflict, table_config)
                self._record_conflict(conflict, table_config)
            result.conflicts += len(conflicts)

            if any(c.resolution == ConflictResolutionResult.FAILED for c in conflicts):
                deferred.append(entry)
            elif any(c.resolution != ConflictResolutionResult.RESOLVED_AUTOMATICALLY for c in conflicts):
                held.append(entry)
            elif all(c.source_wins for c in conflicts):
                candidates.append(entry)
            else:
                lost.append(entry)
                self._log_info(table_config.table_name, f"{entry} lost its conflict, target change kept")

        return candidates, lost, held, deferred

    def _record_conflict(self, conflict: DataConflict, table_config: TableConfig) -> None:
        resolution = conflict.resolution.value if conflict.resolution else 'Unresolved'
        metrics.replication_conflicts_total.labels(
            table_name=conflict.table_name,
            conflict_type=conflict.conflict_type.value,
            resolution=resolution,
        ).inc()
        if self.conflict_log is not None:
            self.conflict_log.record(conflict, table_config.conflict_strategy.value, self.follower_id)

    def _apply_groups(self, table_config: TableConfig, groups: List[DedupGroup]):
        """
        Apply the surviving entries in one transaction on one connection.

        Returns:
            (applied groups, skipped groups, [(group, failed Result)])
        """
        applied: List[DedupGroup] = []
        skipped: List[DedupGroup] = []
        failures: List[Tuple[DedupGroup, Result]] = []
        if not groups:
            return applied, skipped, failures

        adapter = self.channel.adapter
        with self.channel.target_engine.connect() as conn:
            try:
                with conn.begin():
                    adapter.set_suppression(conn, True)
                    for group in groups:
                        entry = group.entry
                        outcome = retry_call(
                            lambda: self._attempt(conn, table_config, entry),
                            max_attempts=self.max_attempts,
                            base_delay=self.base_delay,
                            sleep=self.sleep,
                            description=f"[{table_config.table_name}:{self.channel.label}] {entry}",
                            log=self.logger,
                        )
                        if not outcome.ok:
                            failures.append((group, outcome))
                        elif outcome.value == ApplyOutcome.APPLIED:
                            applied.append(group)
                        else:
                            skipped.append(group)
                    adapter.set_suppression(conn, False)
            except Exception:
                self._reset_connection(conn, table_config.table_name)
                raise

        return applied, skipped, failures

    def _reset_connection(self, conn: Connection, table_name: str) -> None:
        try:
            self.channel.adapter.reset_session(conn)
        except Exception as e:
            self._log_warning(table_name, f"Could not reset suppression state, discarding connection: {e}")
            conn.invalidate()

    def _attempt(self, conn: Connection, table_config: TableConfig, entry: ReplicationLogEntry) -> ApplyOutcome:
        record = self._load_source_record(table_config, entry)
        with conn.begin_nested():
            return self._apply_record(conn, table_config, record, entry.operation_type)

    # ==========================================
    # Source records
    # ==========================================

    def _record_type(self, table_config: TableConfig):
        if table_config.sync_mode != TableSyncMode.ENTITY:
            return None
        record_type = self.registry.get(table_config.table_name)
        if record_type is None:
            raise ConfigurationError(f"No record class registered for {table_config.table_name}")
        return record_type

    def _load_source_record(self, table_config: TableConfig, entry: ReplicationLogEntry) -> SourceRecord:
        """Read the current source state of the record an entry refers to."""
        record_type = self._record_type(table_config)
        wants_row = entry.operation_type != ReplicationOperation.DELETE

        if record_type is not None:
            primary_key = record_type.parse_primary_key(entry.record_id)
            instance = None
            if wants_row:
                with Session(self.channel.source_read_engine) as session:
                    found = session.get(record_type, primary_key)
                    if found is not None:
                        instance = record_type.from_columns(found.to_columns())
            return TypedRecord(record_type=record_type, primary_key=primary_key, instance=instance)

        table = self.reflect_table(self.channel.source_read_engine, table_config.table_name)
        if table_config.primary_key not in table.c:
            raise PersistentError(f"Unknown column {table_config.primary_key} on {table_config.table_name}")
        pk_column = table.c[table_config.primary_key]
        primary_key = {pk_column.name: coerce_key_value(pk_column, entry.record_id)}
        values = None
        if wants_row:
            with self.channel.source_read_engine.connect() as conn:
                row = conn.execute(select(table).where(pk_column == primary_key[pk_column.name])).first()
            if row is not None:
                values = dict(row._mapping)
        return GenericRecord(table=table, primary_key=primary_key, values=values)

    # ==========================================
    # Target writes
    # ==========================================

    def _apply_record(self, conn: Connection, table_config: TableConfig, record: SourceRecord,
                      operation: ReplicationOperation) -> ApplyOutcome:
        if isinstance(record, TypedRecord):
            return self._apply_typed(conn, record, operation)
        if isinstance(record, GenericRecord):
            return self._apply_generic(conn, table_config, record, operation)
        raise TypeError(f"Unsupported record type: {type(record).__name__}")

    def _apply_typed(self, conn: Connection, record: TypedRecord,
                     operation: ReplicationOperation) -> ApplyOutcome:
        with Session(bind=conn, join_transaction_mode='create_savepoint') as session:
            existing = session.get(record.record_type, record.primary_key)

            if operation == ReplicationOperation.DELETE:
                if existing is None:
                    return ApplyOutcome.SKIPPED
                session.delete(existing)
                session.commit()
                return ApplyOutcome.APPLIED

            if record.instance is None:
                # source row vanished since capture
                return ApplyOutcome.SKIPPED

            if existing is None:
                session.add(record.record_type.from_columns(record.instance.to_columns()))
            elif operation == ReplicationOperation.INSERT:
                return ApplyOutcome.SKIPPED
            else:
                record.instance.apply_to(existing)
            session.commit()
            return ApplyOutcome.APPLIED

    def _apply_generic(self, conn: Connection, table_config: TableConfig, record: GenericRecord,
                       operation: ReplicationOperation) -> ApplyOutcome:
        target = self.reflect_table(self.channel.target_engine, table_config.table_name)
        where = and_(*(target.c[name] == value for name, value in record.primary_key.items()))
        exists = conn.execute(select(func.count()).select_from(target).where(where)).scalar() > 0

        if operation == ReplicationOperation.DELETE:
            if not exists:
                return ApplyOutcome.SKIPPED
            conn.execute(delete(target).where(where))
            return ApplyOutcome.APPLIED

        if record.values is None:
            return ApplyOutcome.SKIPPED

        values = {name: value for name, value in record.values.items() if name in target.c}
        if not exists:
            conn.execute(insert(target).values(**values))
            return ApplyOutcome.APPLIED
        if operation == ReplicationOperation.INSERT:
            return ApplyOutcome.SKIPPED

        changes = {name: value for name, value in values.items() if name not in record.primary_key}
        if changes:
            conn.execute(update(target).where(where).values(**changes))
        return ApplyOutcome.APPLIED

    # ==========================================
    # Conflict field values
    # ==========================================

    def _read_row(self, engine: Engine, table_config: TableConfig, record_id: str) -> Optional[Dict[str, Any]]:
        table = self.reflect_table(engine, table_config.table_name)
        pk_column = table.c[table_config.primary_key]
        with engine.connect() as conn:
            row = conn.execute(
                select(table).where(pk_column == coerce_key_value(pk_column, record_id))
            ).first()
        return dict(row._mapping) if row is not None else None

    def _load_conflict_fields(self, conflict: DataConflict, table_config: TableConfig):
        return (
            self._read_row(self.channel.source_read_engine, table_config, conflict.record_id),
            self._read_row(self.channel.target_engine, table_config, conflict.record_id),
        )

    # ==========================================
    # Acknowledgement
    # ==========================================

    def _acknowledge(self, table_config: TableConfig, result: BatchResult, applied: List[DedupGroup],
                     skipped: List[DedupGroup], lost: List[ReplicationLogEntry],
                     held: List[ReplicationLogEntry], deferred: List[ReplicationLogEntry],
                     failures: List[Tuple[DedupGroup, Result]]) -> None:
        table_name = table_config.table_name
        store = self.channel.source_store
        labels = {'table_name': table_name, 'direction': self.channel.label}

        handled_ids: List[int] = []
        for group in applied + skipped:
            handled_ids.extend(group.ids)
        handled_ids.extend(entry.id for entry in lost)

        store.mark_synced(handled_ids)

        for group, outcome in failures:
            error_message = outcome.error_message or 'Unknown error'
            self.ledger.record(group.entry, error_message, outcome.attempts, self.channel.cursor_key)
            store.mark_failed(group.ids, error_message)
            self._log_error(
                table_name,
                f"✗ {group.entry} failed after {outcome.attempts} attempt(s): {error_message}"
            )

        if held:
            for entry in held:
                self.ledger.record(entry, MANUAL_REVIEW_MESSAGE, 0, self.channel.cursor_key)
            store.mark_failed([entry.id for entry in held], MANUAL_REVIEW_MESSAGE)
            self._log_warning(table_name, f"{len(held)} entries held for manual conflict review")

        if deferred:
            store.mark_retry_pending([entry.id for entry in deferred], 'conflict resolution failed')
            self._log_warning(table_name, f"{len(deferred)} entries deferred, conflict resolution failed")

        if handled_ids:
            target = max(handled_ids)
            blocked = [entry.id for entry in held + deferred]
            if blocked:
                target = min(target, min(blocked) - 1)
            result.cursor = self.progress.advance(table_name, self.channel.cursor_key, target)

        result.applied = len(applied)
        result.skipped = len(skipped) + len(lost) + sum(len(g.superseded) for g in applied + skipped)
        result.failed = len(failures)
        result.handled_ids = sorted(handled_ids)
        result.success = not failures

        for group in applied:
            metrics.replication_entries_applied.labels(
                operation=group.entry.operation_type.label.lower(), **labels
            ).inc()
        if result.skipped:
            metrics.replication_entries_skipped.labels(**labels).inc(result.skipped)
        if failures:
            metrics.replication_entries_failed.labels(**labels).inc(len(failures))
        metrics.replication_cursor_position.labels(**labels).set(result.cursor)

    def _fail_batch(self, table_config: TableConfig, entries: List[ReplicationLogEntry], error: Exception,
                    result: BatchResult) -> None:
        """
        Report a batch that could not be applied at all.

        The transaction rolled back, so nothing was written. The entries are
        tagged retry-pending (still fetchable) and the cursor stays where it
        was; the next tick retries the whole batch.
        """
        table_name = table_config.table_name
        self._log_error(table_name, f"Batch failed, {len(entries)} entries left for the next tick: {error}")

        result.success = False
        result.error = str(error)
        result.failed = len(entries)
        try:
            self.channel.source_store.mark_retry_pending(
                [entry.id for entry in entries], f"batch failed: {error}"
            )
        except Exception as e:
            self._log_error(table_name, f"Could not record batch failure: {e}")
            result.error = f"{error}; status write failed: {e}"
        metrics.replication_entries_failed.labels(
            table_name=table_name, direction=self.channel.label
        ).inc(len(entries))
