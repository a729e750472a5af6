"""
Manual recovery of entries recorded in the failure ledger.

For every (table, stream) with failures, under the stream's lease so no
tick of that stream runs meanwhile:
- rewind the stream cursor to just before the earliest failed entry
- replace the failed log rows with fresh entries for the same records
- forget synced markers above the new cursor so later entries replay
- drop the ledger rows

The fresh entries get new ids at the end of the log, so they replay after
changes captured later for other records (and for the same record). The
order does not matter for the final state: every apply reads the record's
current source row, so the last entry of a record always writes what the
source holds now.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from dbsync.exceptions import StreamBusyError
from dbsync.models.log import ManualRetryResult, ReplicationDirection, ReplicationFailureLog
from dbsync.utils.log_store import (
    FailureLedger,
    ReplicationLogStore,
    StreamLockStore,
    SyncProgressStore,
    stream_lock_key,
)

logger = logging.getLogger(__name__)


@dataclass
class RecoveryStream:
    """The source log a cursor key drains."""
    store: ReplicationLogStore
    direction: ReplicationDirection
    server_name: str


class FailureRecovery:
    """Operator-triggered replay of ledgered failures."""

    def __init__(self, ledger: FailureLedger, progress: SyncProgressStore,
                 streams: Dict[str, RecoveryStream], locks: Optional[StreamLockStore] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            ledger: Failure ledger
            progress: Cursor store
            streams: cursor key -> stream whose log holds the failed ids
            locks: Stream leases shared with the polling ticks
            logger: Injected logger
        """
        self.ledger = ledger
        self.progress = progress
        self.streams = streams
        self.locks = locks
        self.logger = logger or logging.getLogger(__name__)

    def manual_retry(self, table_name: Optional[str] = None) -> ManualRetryResult:
        """
        Re-queue every ledgered failure (optionally for one table).

        Returns:
            ManualRetryResult; a group that cannot be recovered leaves its
            ledger rows in place and makes the result unsuccessful
        """
        failures = self.ledger.list_failures(table_name=table_name, follower_keys=list(self.streams))
        if not failures:
            return ManualRetryResult(success=True, message='No failed data to retry')

        groups: Dict[tuple, List[ReplicationFailureLog]] = defaultdict(list)
        for failure in failures:
            groups[(failure.table_name, failure.follower_server_id)].append(failure)

        processed = 0
        processed_tables: List[str] = []
        errors: List[str] = []

        for (group_table, cursor_key), group in sorted(groups.items()):
            try:
                self._recover_group(group_table, cursor_key, group)
                processed += len(group)
                if group_table not in processed_tables:
                    processed_tables.append(group_table)
            except Exception as e:
                error_msg = f"{group_table} ({cursor_key}): {e}"
                self.logger.error(f"[{group_table}] Manual retry failed: {e}")
                errors.append(error_msg)

        if errors:
            return ManualRetryResult(
                success=False,
                message=f"Retried {processed} failed entries; errors: {'; '.join(errors)}",
                processed_count=processed,
                processed_tables=processed_tables,
            )
        return ManualRetryResult(
            success=True,
            message=f"Retried {processed} failed entries in {len(processed_tables)} table(s)",
            processed_count=processed,
            processed_tables=processed_tables,
        )

    def _recover_group(self, table_name: str, cursor_key: str, group: List[ReplicationFailureLog]) -> None:
        if self.locks is None:
            self._requeue(table_name, cursor_key, group)
            return
        with self.locks.hold(stream_lock_key(cursor_key, table_name)) as acquired:
            if not acquired:
                raise StreamBusyError("stream is being processed, try again later")
            self._requeue(table_name, cursor_key, group)

    def _requeue(self, table_name: str, cursor_key: str, group: List[ReplicationFailureLog]) -> None:
        stream = self.streams[cursor_key]
        failed_ids = sorted(failure.id for failure in group)
        new_cursor = max(failed_ids[0] - 1, 0)

        self.progress.rewind(table_name, cursor_key, new_cursor)
        self.logger.info(f"[{table_name}] Cursor {cursor_key} rewound to {new_cursor}")

        stream.store.delete_entries(failed_ids)
        for failure in sorted(group, key=lambda f: f.id):
            stream.store.append(
                table_name=table_name,
                operation=failure.operation_type,
                record_id=failure.record_id,
                direction=stream.direction,
                source_server=stream.server_name,
                operation_id=str(uuid.uuid4()),
            )

        reset = stream.store.reset_status_from(table_name, stream.direction, new_cursor)
        self.ledger.delete([(failure.id, cursor_key) for failure in group])
        self.logger.info(
            f"[{table_name}] ✓ Re-queued {len(group)} failed entries, {reset} later entries reset"
        )

    def statistics(self) -> Dict[str, Any]:
        return self.ledger.statistics(follower_keys=list(self.streams))
