"""
Replication state tables and their access layer.

Tables (SQLAlchemy Core, created idempotently on the leader and follower):

- replication_logs: append-only change log written by the capture triggers
- replication_status_<follower>[_to_leader]: per-follower synced markers
- sync_progress: per (table, follower, direction) cursor
- replication_failure_logs: entries that exhausted their retries
- conflict_logs: audit trail of detected conflicts
- replication_stream_locks: leases giving one process a stream at a time
"""

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    delete,
    false,
    func,
    insert,
    inspect,
    or_,
    select,
    true,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from dbsync.models.conflict import ConflictResolutionResult, DataConflict
from dbsync.models.log import (
    ReplicationDirection,
    ReplicationFailureLog,
    ReplicationLogEntry,
    ReplicationOperation,
    SyncProgress,
)

logger = logging.getLogger(__name__)

STATUS_TABLE_PREFIX = 'replication_status'
ERROR_MESSAGE_LENGTH = 500
IN_CLAUSE_CHUNK = 500
RETRY_PENDING_PREFIX = 'Retry pending: '

# SQLite only auto-increments INTEGER PRIMARY KEY columns
LogId = BigInteger().with_variant(Integer(), 'sqlite')

metadata = MetaData()

replication_logs = Table(
    'replication_logs', metadata,
    Column('id', LogId, primary_key=True, autoincrement=True),
    Column('table_name', String(100), nullable=False),
    Column('operation_type', Integer, nullable=False),
    Column('record_id', String(200), nullable=False),
    Column('data', String(200)),
    Column('timestamp', DateTime, nullable=False),
    Column('processed', Boolean, nullable=False, default=False),
    Column('direction', Integer, nullable=False, default=0),
    Column('source_server', String(100)),
    Column('operation_id', String(36)),
    Index('idx_table_operation', 'table_name', 'operation_type'),
    Index('idx_timestamp', 'timestamp'),
    Index('idx_operation_id', 'operation_id'),
    Index('idx_log_table_record', 'table_name', 'record_id'),
)

sync_progress = Table(
    'sync_progress', metadata,
    Column('id', LogId, primary_key=True, autoincrement=True),
    Column('table_name', String(100), nullable=False),
    Column('follower_server_id', String(100), nullable=False),
    Column('last_synced_id', BigInteger, nullable=False, default=0),
    Column('last_sync_time', DateTime),
    UniqueConstraint('table_name', 'follower_server_id', name='uq_sync_progress_table_follower'),
)

# id is the originating log entry id; follower_server_id carries the cursor
# key, which tells which side's log the id belongs to
replication_failure_logs = Table(
    'replication_failure_logs', metadata,
    Column('id', BigInteger, primary_key=True, autoincrement=False),
    Column('follower_server_id', String(100), primary_key=True),
    Column('table_name', String(100), nullable=False),
    Column('operation_type', Integer, nullable=False),
    Column('record_id', String(200), nullable=False),
    Column('data', String(200)),
    Column('error_message', Text),
    Column('retry_count', Integer, nullable=False, default=0),
    Column('failure_time', DateTime, nullable=False),
)

conflict_logs = Table(
    'conflict_logs', metadata,
    Column('id', LogId, primary_key=True, autoincrement=True),
    Column('table_name', String(100), nullable=False),
    Column('record_id', String(200), nullable=False),
    Column('conflict_type', String(50), nullable=False),
    Column('detected_at', DateTime, nullable=False),
    Column('resolution', String(50)),
    Column('resolution_strategy', String(50)),
    Column('details', JSON),
    Column('resolved_by', String(100)),
    Column('resolved_at', DateTime),
    Index('idx_table_record', 'table_name', 'record_id'),
    Index('idx_detected_at', 'detected_at'),
)

stream_locks = Table(
    'replication_stream_locks', metadata,
    Column('lock_key', String(200), primary_key=True),
    Column('owner', String(100)),
    Column('acquired_at', DateTime),
)


def db_now() -> datetime:
    """Naive local time, matching the NOW() the capture triggers record."""
    return datetime.now()


def get_status_table(name: str) -> Table:
    """Return (defining on first use) the status table called ``name``."""
    if name in metadata.tables:
        return metadata.tables[name]
    return Table(
        name, metadata,
        Column('log_entry_id', BigInteger, ForeignKey('replication_logs.id'), primary_key=True,
               autoincrement=False),
        Column('is_synced', Boolean, nullable=False, default=False),
        Column('sync_time', DateTime),
        Column('error_message', String(ERROR_MESSAGE_LENGTH)),
    )


def ensure_tables(engine: Engine, tables: Sequence[Table]) -> None:
    """Create the given state tables if they do not exist yet."""
    metadata.create_all(engine, tables=list(tables), checkfirst=True)


def _chunks(values: Sequence[Any], size: int = IN_CLAUSE_CHUNK) -> Iterable[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class ReplicationLogStore:
    """
    Change log plus one status table on one database.

    The status table tracks entries of the log that a follower has already
    applied (or given up on), independent of the cursor.
    """

    def __init__(self, engine: Engine, status_table_name: str, logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.logs = replication_logs
        self.status = get_status_table(status_table_name)
        self.logger = logger or logging.getLogger(__name__)

    def ensure_tables(self) -> None:
        ensure_tables(self.engine, [self.logs, self.status])

    def _unsynced(self):
        # entries given up on carry an error and wait for manual recovery;
        # retry-pending errors stay fetchable
        return or_(
            self.status.c.log_entry_id.is_(None),
            and_(
                self.status.c.is_synced == false(),
                or_(
                    self.status.c.error_message.is_(None),
                    self.status.c.error_message.like(f"{RETRY_PENDING_PREFIX}%"),
                ),
            ),
        )

    def _joined(self):
        return self.logs.outerjoin(self.status, self.status.c.log_entry_id == self.logs.c.id)

    def fetch_pending(self, table_name: str, direction: ReplicationDirection, after_id: int,
                      limit: int) -> List[ReplicationLogEntry]:
        """
        Oldest-first batch of captured entries above the cursor that are not
        marked synced.
        """
        stmt = (
            select(self.logs)
            .select_from(self._joined())
            .where(
                self.logs.c.table_name == table_name,
                self.logs.c.direction == int(direction),
                self.logs.c.processed == false(),
                self.logs.c.id > after_id,
                self._unsynced(),
            )
            .order_by(self.logs.c.id)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [ReplicationLogEntry.from_row(row) for row in conn.execute(stmt)]

    def get_entries(self, ids: Sequence[int]) -> List[ReplicationLogEntry]:
        entries = []
        with self.engine.connect() as conn:
            for chunk in _chunks(list(ids)):
                stmt = select(self.logs).where(self.logs.c.id.in_(chunk)).order_by(self.logs.c.id)
                entries.extend(ReplicationLogEntry.from_row(row) for row in conn.execute(stmt))
        return entries

    def append(self, table_name: str, operation: ReplicationOperation, record_id: str,
               direction: ReplicationDirection, source_server: str, operation_id: str,
               timestamp: Optional[datetime] = None, processed: bool = False, conn=None) -> int:
        """Append one log row and return its id."""
        values = {
            'table_name': table_name,
            'operation_type': int(operation),
            'record_id': str(record_id),
            'data': str(record_id),
            'timestamp': timestamp or db_now(),
            'processed': processed,
            'direction': int(direction),
            'source_server': source_server,
            'operation_id': operation_id,
        }
        if conn is not None:
            return conn.execute(insert(self.logs).values(**values)).inserted_primary_key[0]
        with self.engine.begin() as own_conn:
            return own_conn.execute(insert(self.logs).values(**values)).inserted_primary_key[0]

    def _upsert_status(self, ids: Sequence[int], is_synced: bool, error_message: Optional[str]) -> None:
        if not ids:
            return
        if error_message:
            error_message = error_message[:ERROR_MESSAGE_LENGTH]
        now = db_now()
        values = {'is_synced': is_synced, 'sync_time': now if is_synced else None, 'error_message': error_message}
        with self.engine.begin() as conn:
            for chunk in _chunks(sorted(set(ids))):
                existing = set(conn.execute(
                    select(self.status.c.log_entry_id).where(self.status.c.log_entry_id.in_(chunk))
                ).scalars())
                if existing:
                    conn.execute(
                        update(self.status)
                        .where(self.status.c.log_entry_id.in_(list(existing)))
                        .values(**values)
                    )
                missing = [log_id for log_id in chunk if log_id not in existing]
                if missing:
                    conn.execute(insert(self.status), [dict(values, log_entry_id=log_id) for log_id in missing])

    def mark_synced(self, ids: Sequence[int]) -> None:
        self._upsert_status(ids, True, None)

    def mark_failed(self, ids: Sequence[int], error_message: str) -> None:
        """Park entries until manual recovery; fetches skip them."""
        self._upsert_status(ids, False, error_message)

    def mark_retry_pending(self, ids: Sequence[int], reason: str) -> None:
        """Record why entries were not applied while leaving them for the next tick."""
        self._upsert_status(ids, False, f"{RETRY_PENDING_PREFIX}{reason}")

    def find_pending_for_record(self, table_name: str, record_id: str, direction: ReplicationDirection,
                                window_start: datetime, window_end: datetime) -> List[ReplicationLogEntry]:
        """Unsynced entries for one record captured inside [window_start, window_end]."""
        stmt = (
            select(self.logs)
            .select_from(self._joined())
            .where(
                self.logs.c.table_name == table_name,
                self.logs.c.record_id == str(record_id),
                self.logs.c.direction == int(direction),
                self.logs.c.processed == false(),
                self.logs.c.timestamp >= window_start,
                self.logs.c.timestamp <= window_end,
                self._unsynced(),
            )
            .order_by(self.logs.c.id)
        )
        with self.engine.connect() as conn:
            return [ReplicationLogEntry.from_row(row) for row in conn.execute(stmt)]

    def find_applied_newer_for_record(self, table_name: str, record_id: str, direction: ReplicationDirection,
                                      after: datetime) -> List[ReplicationLogEntry]:
        """Entries for one record already marked synced and captured after ``after``."""
        stmt = (
            select(self.logs)
            .select_from(self.logs.join(self.status, self.status.c.log_entry_id == self.logs.c.id))
            .where(
                self.logs.c.table_name == table_name,
                self.logs.c.record_id == str(record_id),
                self.logs.c.direction == int(direction),
                self.logs.c.timestamp > after,
                self.status.c.is_synced == true(),
            )
            .order_by(self.logs.c.id)
        )
        with self.engine.connect() as conn:
            return [ReplicationLogEntry.from_row(row) for row in conn.execute(stmt)]

    def latest_id(self, table_name: str, direction: Optional[ReplicationDirection] = None) -> int:
        stmt = select(func.max(self.logs.c.id)).where(self.logs.c.table_name == table_name)
        if direction is not None:
            stmt = stmt.where(self.logs.c.direction == int(direction))
        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar() or 0)

    def count_pending(self, table_name: str, direction: ReplicationDirection, after_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(self._joined())
            .where(
                self.logs.c.table_name == table_name,
                self.logs.c.direction == int(direction),
                self.logs.c.processed == false(),
                self.logs.c.id > after_id,
                self._unsynced(),
            )
        )
        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar() or 0)

    def reset_status_from(self, table_name: str, direction: ReplicationDirection, after_id: int) -> int:
        """Forget synced markers for a table's entries above ``after_id``."""
        log_ids = (
            select(self.logs.c.id)
            .where(
                self.logs.c.table_name == table_name,
                self.logs.c.direction == int(direction),
                self.logs.c.id > after_id,
            )
        )
        with self.engine.begin() as conn:
            result = conn.execute(delete(self.status).where(self.status.c.log_entry_id.in_(log_ids)))
            return result.rowcount or 0

    def _status_tables(self) -> List[Table]:
        names = [
            name for name in inspect(self.engine).get_table_names()
            if name.startswith(STATUS_TABLE_PREFIX)
        ]
        return [get_status_table(name) for name in names]

    def delete_entries(self, ids: Sequence[int]) -> int:
        """Delete log rows (and every status row pointing at them)."""
        ids = list(ids)
        if not ids:
            return 0
        deleted = 0
        status_tables = self._status_tables()
        with self.engine.begin() as conn:
            for chunk in _chunks(ids):
                for status in status_tables:
                    conn.execute(delete(status).where(status.c.log_entry_id.in_(chunk)))
                result = conn.execute(delete(self.logs).where(self.logs.c.id.in_(chunk)))
                deleted += result.rowcount or 0
        return deleted

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete log rows captured before ``cutoff`` along with their status rows."""
        old_ids = select(self.logs.c.id).where(self.logs.c.timestamp < cutoff)
        with self.engine.connect() as conn:
            ids = list(conn.execute(old_ids).scalars())
        return self.delete_entries(ids)

    def delete_orphaned_status(self) -> int:
        """Delete status rows whose log row no longer exists, in every status table."""
        deleted = 0
        with self.engine.begin() as conn:
            for status in self._status_tables():
                result = conn.execute(
                    delete(status).where(status.c.log_entry_id.not_in(select(self.logs.c.id)))
                )
                deleted += result.rowcount or 0
        return deleted


class SyncProgressStore:
    """Durable cursors. ``advance`` never moves a cursor backwards."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.table = sync_progress

    def ensure_tables(self) -> None:
        ensure_tables(self.engine, [self.table])

    def get(self, table_name: str, follower_key: str) -> SyncProgress:
        stmt = select(self.table).where(
            self.table.c.table_name == table_name,
            self.table.c.follower_server_id == follower_key,
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        if row is None:
            return SyncProgress(table_name=table_name, follower_server_id=follower_key)
        return SyncProgress(
            table_name=row.table_name,
            follower_server_id=row.follower_server_id,
            last_synced_id=int(row.last_synced_id or 0),
            last_sync_time=row.last_sync_time,
        )

    def _exists(self, conn, table_name: str, follower_key: str) -> bool:
        return conn.execute(
            select(self.table.c.id).where(
                self.table.c.table_name == table_name,
                self.table.c.follower_server_id == follower_key,
            )
        ).first() is not None

    def advance(self, table_name: str, follower_key: str, last_id: int) -> int:
        """
        Move the cursor forward to ``last_id``.

        Returns:
            The cursor after the call (unchanged if ``last_id`` is not greater)
        """
        now = db_now()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(self.table)
                .where(
                    self.table.c.table_name == table_name,
                    self.table.c.follower_server_id == follower_key,
                    self.table.c.last_synced_id < last_id,
                )
                .values(last_synced_id=last_id, last_sync_time=now)
            )
            if not result.rowcount and not self._exists(conn, table_name, follower_key):
                conn.execute(insert(self.table).values(
                    table_name=table_name,
                    follower_server_id=follower_key,
                    last_synced_id=last_id,
                    last_sync_time=now,
                ))
        return self.get(table_name, follower_key).last_synced_id

    def rewind(self, table_name: str, follower_key: str, last_id: int) -> None:
        """Set the cursor to ``last_id`` even if that moves it backwards."""
        last_id = max(int(last_id), 0)
        now = db_now()
        with self.engine.begin() as conn:
            if self._exists(conn, table_name, follower_key):
                conn.execute(
                    update(self.table)
                    .where(
                        self.table.c.table_name == table_name,
                        self.table.c.follower_server_id == follower_key,
                    )
                    .values(last_synced_id=last_id, last_sync_time=now)
                )
            else:
                conn.execute(insert(self.table).values(
                    table_name=table_name,
                    follower_server_id=follower_key,
                    last_synced_id=last_id,
                    last_sync_time=now,
                ))

    def all(self) -> List[SyncProgress]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(self.table).order_by(self.table.c.table_name)).all()
        return [
            SyncProgress(row.table_name, row.follower_server_id, int(row.last_synced_id or 0), row.last_sync_time)
            for row in rows
        ]


class FailureLedger:
    """Entries that exhausted their automatic retries."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.table = replication_failure_logs

    def ensure_tables(self) -> None:
        ensure_tables(self.engine, [self.table])

    def record(self, entry: ReplicationLogEntry, error_message: str, retry_count: int,
               follower_key: str) -> None:
        """Write (or overwrite) the ledger row for ``entry``."""
        values = {
            'table_name': entry.table_name,
            'operation_type': int(entry.operation_type),
            'record_id': entry.record_id,
            'data': entry.data,
            'error_message': error_message,
            'retry_count': retry_count,
            'failure_time': db_now(),
        }
        key = and_(self.table.c.id == entry.id, self.table.c.follower_server_id == follower_key)
        with self.engine.begin() as conn:
            result = conn.execute(update(self.table).where(key).values(**values))
            if not result.rowcount:
                conn.execute(insert(self.table).values(id=entry.id, follower_server_id=follower_key, **values))

    def list_failures(self, table_name: Optional[str] = None,
                      follower_keys: Optional[Sequence[str]] = None) -> List[ReplicationFailureLog]:
        stmt = select(self.table).order_by(self.table.c.table_name, self.table.c.id)
        if table_name:
            stmt = stmt.where(self.table.c.table_name == table_name)
        if follower_keys:
            stmt = stmt.where(self.table.c.follower_server_id.in_(list(follower_keys)))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [
            ReplicationFailureLog(
                id=int(row.id),
                table_name=row.table_name,
                operation_type=ReplicationOperation(int(row.operation_type)),
                record_id=row.record_id,
                error_message=row.error_message or '',
                failure_time=row.failure_time,
                retry_count=int(row.retry_count),
                follower_server_id=row.follower_server_id,
                data=row.data,
            )
            for row in rows
        ]

    def delete(self, keys: Sequence[Tuple[int, str]]) -> int:
        deleted = 0
        with self.engine.begin() as conn:
            for log_id, follower_key in keys:
                result = conn.execute(delete(self.table).where(
                    self.table.c.id == log_id,
                    self.table.c.follower_server_id == follower_key,
                ))
                deleted += result.rowcount or 0
        return deleted

    def statistics(self, follower_keys: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        failures = self.list_failures(follower_keys=follower_keys)
        by_table: Dict[str, int] = {}
        by_operation: Dict[str, int] = {}
        for failure in failures:
            by_table[failure.table_name] = by_table.get(failure.table_name, 0) + 1
            label = failure.operation_type.label
            by_operation[label] = by_operation.get(label, 0) + 1
        times = [f.failure_time for f in failures if f.failure_time]
        return {
            'total_failures': len(failures),
            'by_table': by_table,
            'by_operation': by_operation,
            'oldest_failure': min(times) if times else None,
            'newest_failure': max(times) if times else None,
        }


class ConflictLogStore:
    """Audit trail of detected conflicts."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.table = conflict_logs

    def ensure_tables(self) -> None:
        ensure_tables(self.engine, [self.table])

    def record(self, conflict: DataConflict, strategy: str, follower_id: str) -> None:
        resolved = conflict.resolution == ConflictResolutionResult.RESOLVED_AUTOMATICALLY
        with self.engine.begin() as conn:
            conn.execute(insert(self.table).values(
                table_name=conflict.table_name,
                record_id=conflict.record_id,
                conflict_type=conflict.conflict_type.value,
                detected_at=conflict.detected_at,
                resolution=conflict.resolution.value if conflict.resolution else None,
                resolution_strategy=strategy,
                details=conflict.details(),
                resolved_by=f"System_{follower_id}",
                resolved_at=db_now() if resolved else None,
            ))

    def list_conflicts(self, table_name: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        stmt = select(self.table).order_by(self.table.c.id.desc()).limit(limit)
        if table_name:
            stmt = stmt.where(self.table.c.table_name == table_name)
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]


class StreamLockStore:
    """
    Cross-process single-flight for streams and recoveries.

    One row per lock key holding the owner and the time it was taken. Leases
    are not re-entrant: a second acquire fails even for the same owner, so
    two threads of one process exclude each other too. A lease older than
    ``lease_seconds`` is considered abandoned (its holder crashed) and can be
    taken over.
    """

    def __init__(self, engine: Engine, lease_seconds: float = 600.0, owner: Optional[str] = None):
        self.engine = engine
        self.table = stream_locks
        self.lease_seconds = lease_seconds
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._table_ready = False

    def ensure_tables(self) -> None:
        ensure_tables(self.engine, [self.table])
        self._table_ready = True

    def acquire(self, key: str) -> bool:
        # commands and workers can run before any process created the lock table
        if not self._table_ready:
            self.ensure_tables()
        now = db_now()
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(self.table).values(lock_key=key, owner=self.owner, acquired_at=now))
            return True
        except IntegrityError:
            pass

        stale = now - timedelta(seconds=self.lease_seconds)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(self.table)
                .where(
                    self.table.c.lock_key == key,
                    or_(self.table.c.owner.is_(None), self.table.c.acquired_at < stale),
                )
                .values(owner=self.owner, acquired_at=now)
            )
            return bool(result.rowcount)

    def release(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(self.table)
                .where(self.table.c.lock_key == key, self.table.c.owner == self.owner)
                .values(owner=None, acquired_at=None)
            )

    @contextmanager
    def hold(self, key: str) -> Iterator[bool]:
        """
        Yield whether ``key`` was acquired; release it on exit if it was.

        Example:
            with locks.hold('branch01:orders') as acquired:
                if acquired:
                    applier.process_batch(table_config)
        """
        acquired = self.acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


def stream_lock_key(cursor_key: str, table_name: str) -> str:
    """Lock key shared by the polling tick and manual recovery of one stream."""
    return f"{cursor_key}:{table_name}"
