"""
Bulk initial loader.

Copies a table from the leader to the follower in primary-key ordered
windows loaded concurrently, each window in its own transaction with the
suppression flag set so the follower's triggers stay silent.

The leader's latest log id for the table is captured before the copy and
becomes the stream cursor afterwards: changes made while the copy runs are
replayed by the applier, idempotently.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from sqlalchemy import MetaData, Table, func, select
from sqlalchemy.engine import Engine

from dbsync import metrics
from dbsync.exceptions import BulkLoadError
from dbsync.models.config import TableConfig
from dbsync.models.log import ReplicationDirection
from dbsync.replication.retry import retry_call
from dbsync.utils.adapters import BaseDatabaseAdapter, get_adapter
from dbsync.utils.log_store import ReplicationLogStore, SyncProgressStore

logger = logging.getLogger(__name__)


class BulkLoader:
    """Truncate-and-copy of whole tables from the leader to the follower."""

    MAX_ATTEMPTS = 3
    TRUNCATE_BASE_DELAY_SECONDS = 1.0

    def __init__(
        self,
        source_engine: Engine,
        target_engine: Engine,
        leader_store: Optional[ReplicationLogStore] = None,
        progress: Optional[SyncProgressStore] = None,
        cursor_key: str = '',
        read_engine: Optional[Engine] = None,
        window_size: int = 5000,
        window_concurrency: int = 4,
        window_base_delay: float = 1.0,
        adapter: Optional[BaseDatabaseAdapter] = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            source_engine: Leader database
            target_engine: Follower database
            leader_store: Leader change log (cursor capture)
            progress: Cursor store (set after a successful load)
            cursor_key: Leader -> follower cursor key
            read_engine: Leader read replica used for reads, if any
            window_size: Rows per window
            window_concurrency: Windows loaded at the same time
            window_base_delay: Backoff base for window retries
            adapter: Dialect adapter of the follower (derived if omitted)
            sleep: Sleep function (injectable for tests)
            logger: Injected logger
        """
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self.source_engine = source_engine
        self.target_engine = target_engine
        self.leader_store = leader_store
        self.progress = progress
        self.cursor_key = cursor_key
        self.read_engine = read_engine or source_engine
        self.window_size = window_size
        self.window_concurrency = max(1, window_concurrency)
        self.window_base_delay = window_base_delay
        self.adapter = adapter or get_adapter(target_engine)
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def _truncate(self, table_name: str) -> None:
        with self.target_engine.begin() as conn:
            self.adapter.set_suppression(conn, True)
            self.adapter.truncate_table(conn, table_name)
            self.adapter.set_suppression(conn, False)

    def _load_window(self, source: Table, target: Table, columns: List[str], primary_key: str,
                     offset: int) -> int:
        stmt = (
            select(*[source.c[name] for name in columns])
            .order_by(source.c[primary_key])
            .offset(offset)
            .limit(self.window_size)
        )
        with self.read_engine.connect() as conn:
            rows = [tuple(row) for row in conn.execute(stmt)]
        if not rows:
            return 0

        with self.target_engine.connect() as conn:
            with conn.begin():
                self.adapter.set_suppression(conn, True)
                written = self.adapter.bulk_insert(conn, target, columns, rows)
                self.adapter.set_suppression(conn, False)
        return written

    def load_table(self, table_config: TableConfig) -> int:
        """
        Replace the follower copy of a table with the leader's rows.

        Returns:
            Number of rows written

        Raises:
            BulkLoadError: If the truncate or any window exhausts its retries
        """
        table_name = table_config.table_name
        started = time.time()

        captured_id = 0
        if self.leader_store is not None:
            captured_id = self.leader_store.latest_id(table_name, ReplicationDirection.LEADER_TO_FOLLOWER)

        self.logger.info(f"[{table_name}] STEP 1/3: Truncating follower table")
        truncated = retry_call(
            lambda: self._truncate(table_name),
            max_attempts=self.MAX_ATTEMPTS,
            base_delay=self.TRUNCATE_BASE_DELAY_SECONDS,
            sleep=self.sleep,
            description=f"[{table_name}] truncate",
            log=self.logger,
        )
        if not truncated.ok:
            raise BulkLoadError(f"Failed to truncate {table_name}: {truncated.error_message}")

        source = Table(table_name, MetaData(), autoload_with=self.read_engine)
        target = Table(table_name, MetaData(), autoload_with=self.target_engine)
        columns = [c.name for c in source.c if c.name in target.c]
        primary_key = table_config.primary_key
        if primary_key not in source.c:
            raise BulkLoadError(f"Primary key {primary_key} not found on {table_name}")

        with self.read_engine.connect() as conn:
            total = int(conn.execute(select(func.count()).select_from(source)).scalar() or 0)

        windows = math.ceil(total / self.window_size)
        self.logger.info(
            f"[{table_name}] STEP 2/3: Copying {total} rows in {windows} window(s) "
            f"of {self.window_size} ({self.window_concurrency} concurrent)"
        )

        written = 0
        errors = []
        if windows:
            with ThreadPoolExecutor(max_workers=min(self.window_concurrency, windows)) as executor:
                futures = [
                    executor.submit(
                        retry_call,
                        lambda offset=index * self.window_size: self._load_window(
                            source, target, columns, primary_key, offset
                        ),
                        self.MAX_ATTEMPTS,
                        self.window_base_delay,
                        self.sleep,
                        f"[{table_name}] window {index + 1}/{windows}",
                        self.logger,
                    )
                    for index in range(windows)
                ]
                for index, future in enumerate(futures):
                    outcome = future.result()
                    if outcome.ok:
                        written += outcome.value
                    else:
                        errors.append(f"window {index + 1}: {outcome.error_message}")

        if errors:
            raise BulkLoadError(f"Failed to load {table_name}: {'; '.join(errors)}")

        if self.progress is not None and self.cursor_key:
            self.progress.advance(table_name, self.cursor_key, captured_id)

        duration = time.time() - started
        metrics.initial_load_rows_total.labels(table_name=table_name).inc(written)
        metrics.initial_load_duration.labels(table_name=table_name).observe(duration)
        self.logger.info(
            f"[{table_name}] STEP 3/3: ✓ Loaded {written} rows in {duration:.2f}s, cursor set to {captured_id}"
        )
        return written
