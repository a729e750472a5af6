"""
Conflict detection and resolution for bidirectional tables.

A change about to be applied conflicts with a change captured on the target
side for the same record when the target change is either
(a) still pending and captured within the conflict window around the
    change, or
(b) already synced and captured after the change.
"""

import logging
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from dbsync.models.config import DEFAULT_PRIORITY_FIELDS, ConflictResolutionStrategy, TableConfig
from dbsync.models.conflict import ConflictResolutionResult, ConflictType, DataConflict
from dbsync.models.log import ReplicationDirection, ReplicationLogEntry
from dbsync.utils.log_store import ReplicationLogStore, db_now

logger = logging.getLogger(__name__)

VERSION_RE = re.compile(r'^\d+(\.\d+)+$')

# (conflict, table) -> (source row values, target row values)
FieldLoader = Callable[[DataConflict, TableConfig], Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]]
CustomResolver = Callable[[DataConflict, TableConfig], Optional[ReplicationLogEntry]]


class ConflictDetector:
    """Finds target-side changes that collide with a change being applied."""

    def __init__(self, target_store: ReplicationLogStore, window_seconds: float = 30.0,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            target_store: Log store of the database the change is applied to
            window_seconds: Half-width of the window for pending changes
            logger: Injected logger
        """
        self.target_store = target_store
        self.window = timedelta(seconds=window_seconds)
        self.logger = logger or logging.getLogger(__name__)

    def detect(self, entry: ReplicationLogEntry) -> List[DataConflict]:
        opposite = entry.direction.opposite
        pending = self.target_store.find_pending_for_record(
            entry.table_name, entry.record_id, opposite,
            entry.timestamp - self.window, entry.timestamp + self.window,
        )
        applied = self.target_store.find_applied_newer_for_record(
            entry.table_name, entry.record_id, opposite, entry.timestamp,
        )

        conflicts = []
        seen = set()
        for target_entry in list(pending) + list(applied):
            if target_entry.id in seen:
                continue
            seen.add(target_entry.id)
            conflicts.append(DataConflict(
                table_name=entry.table_name,
                record_id=entry.record_id,
                source_entry=entry,
                target_entry=target_entry,
                conflict_type=ConflictType.classify(entry.operation_type, target_entry.operation_type),
                detected_at=db_now(),
            ))

        if conflicts:
            self.logger.info(
                f"[{entry.table_name}] {len(conflicts)} conflict(s) for record {entry.record_id}: "
                f"{', '.join(c.conflict_type.value for c in conflicts)}"
            )
        return conflicts


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    return None


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def compare_values(a: Any, b: Any) -> Optional[int]:
    """
    Compare two field values: numeric, then date-time, then string.

    Dotted version strings ("1.10.2") compare component-wise as integers;
    other strings compare case-insensitively.

    Returns:
        1 if ``a`` is greater, -1 if smaller, 0 if equal, None if either is
        missing
    """
    if a is None or b is None:
        return None

    num_a, num_b = _as_number(a), _as_number(b)
    if num_a is not None and num_b is not None:
        return _cmp(num_a, num_b)

    dt_a, dt_b = _as_datetime(a), _as_datetime(b)
    if dt_a is not None and dt_b is not None:
        return _cmp(dt_a, dt_b)

    str_a, str_b = str(a).strip(), str(b).strip()
    if VERSION_RE.match(str_a) and VERSION_RE.match(str_b):
        return _cmp(tuple(int(p) for p in str_a.split('.')), tuple(int(p) for p in str_b.split('.')))
    return _cmp(str_a.casefold(), str_b.casefold())


class ConflictResolver:
    """Applies a table's conflict resolution strategy to detected conflicts."""

    def __init__(self, field_loader: Optional[FieldLoader] = None,
                 custom_resolver: Optional[CustomResolver] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            field_loader: Reads the current source/target rows of a conflict
            custom_resolver: Hook used by the Custom strategy
            logger: Injected logger
        """
        self.field_loader = field_loader
        self.custom_resolver = custom_resolver
        self.logger = logger or logging.getLogger(__name__)

    def resolve(self, conflict: DataConflict, table_config: TableConfig) -> DataConflict:
        """
        Resolve ``conflict`` in place.

        Sets resolution, resolved_entry (None under manual review or failure)
        and reason. Never raises; a resolver error yields Failed.
        """
        strategy = table_config.conflict_strategy
        try:
            if strategy == ConflictResolutionStrategy.MANUAL_REVIEW:
                conflict.resolution = ConflictResolutionResult.REQUIRES_MANUAL_REVIEW
                conflict.resolved_entry = None
                conflict.reason = 'Manual review required'
                return conflict

            handlers = {
                ConflictResolutionStrategy.PREFER_LEADER: self._prefer_leader,
                ConflictResolutionStrategy.PREFER_FOLLOWER: self._prefer_follower,
                ConflictResolutionStrategy.LAST_WRITE_WINS: self._last_write_wins,
                ConflictResolutionStrategy.FIELD_PRIORITY: self._field_priority,
                ConflictResolutionStrategy.CUSTOM: self._custom,
            }
            winner, reason = handlers[strategy](conflict, table_config)
            conflict.resolution = ConflictResolutionResult.RESOLVED_AUTOMATICALLY
            conflict.resolved_entry = winner
            conflict.reason = reason

        except Exception as e:
            self.logger.error(f"[{conflict.table_name}] Conflict resolution failed for {conflict.record_id}: {e}")
            conflict.resolution = ConflictResolutionResult.FAILED
            conflict.resolved_entry = None
            conflict.reason = f"Resolution error: {e}"

        return conflict

    @staticmethod
    def _prefer(conflict: DataConflict, direction: ReplicationDirection, label: str):
        if conflict.source_entry.direction == direction:
            return conflict.source_entry, f"{label} preferred (source change)"
        return conflict.target_entry, f"{label} preferred (target change)"

    def _prefer_leader(self, conflict: DataConflict, table_config: TableConfig):
        return self._prefer(conflict, ReplicationDirection.LEADER_TO_FOLLOWER, 'Leader')

    def _prefer_follower(self, conflict: DataConflict, table_config: TableConfig):
        return self._prefer(conflict, ReplicationDirection.FOLLOWER_TO_LEADER, 'Follower')

    def _compare_fields(self, conflict: DataConflict, table_config: TableConfig, fields: Sequence[str]):
        """First differing priority field decides; None if none does."""
        if not self.field_loader or not fields:
            return None
        source_values, target_values = self.field_loader(conflict, table_config)
        if not source_values or not target_values:
            return None
        for name in fields:
            if name not in source_values or name not in target_values:
                continue
            result = compare_values(source_values[name], target_values[name])
            if result:
                winner = conflict.source_entry if result > 0 else conflict.target_entry
                side = 'source' if result > 0 else 'target'
                return winner, f"Field {name} decided for {side}"
        return None

    def _last_write_wins(self, conflict: DataConflict, table_config: TableConfig):
        source, target = conflict.source_entry, conflict.target_entry
        if source.timestamp != target.timestamp:
            if source.timestamp > target.timestamp:
                return source, 'Source change is more recent'
            return target, 'Target change is more recent'

        fields = table_config.priority_fields or DEFAULT_PRIORITY_FIELDS
        decided = self._compare_fields(conflict, table_config, fields)
        if decided:
            return decided
        return source, 'Timestamps and priority fields tie, source wins'

    def _field_priority(self, conflict: DataConflict, table_config: TableConfig):
        if not table_config.priority_fields:
            winner, reason = self._prefer_leader(conflict, table_config)
            return winner, f"No priority fields configured; {reason}"
        decided = self._compare_fields(conflict, table_config, table_config.priority_fields)
        if decided:
            return decided
        return conflict.source_entry, 'Priority fields tie, source wins'

    def _custom(self, conflict: DataConflict, table_config: TableConfig):
        if self.custom_resolver is not None:
            winner = self.custom_resolver(conflict, table_config)
            if winner is not None:
                return winner, 'Custom resolver'
        winner, reason = self._prefer_leader(conflict, table_config)
        return winner, f"No custom resolution; {reason}"
