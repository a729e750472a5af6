from datetime import datetime, timedelta

import pytest

from dbsync.models.config import ConflictResolutionStrategy, TableConfig
from dbsync.models.conflict import ConflictResolutionResult, ConflictType, DataConflict
from dbsync.models.log import ReplicationDirection, ReplicationLogEntry, ReplicationOperation
from dbsync.replication.conflicts import ConflictDetector, ConflictResolver, compare_values

L2F = ReplicationDirection.LEADER_TO_FOLLOWER
F2L = ReplicationDirection.FOLLOWER_TO_LEADER
NOW = datetime(2024, 5, 1, 10, 0, 0)


def entry(log_id, direction, operation=ReplicationOperation.UPDATE, seconds=0):
    return ReplicationLogEntry(
        id=log_id,
        table_name='items',
        operation_type=operation,
        record_id='7',
        timestamp=NOW + timedelta(seconds=seconds),
        direction=direction,
    )


def conflict(source, target):
    return DataConflict(
        table_name='items',
        record_id='7',
        source_entry=source,
        target_entry=target,
        conflict_type=ConflictType.classify(source.operation_type, target.operation_type),
        detected_at=NOW,
    )


def table(strategy, priority_fields=()):
    return TableConfig(
        table_name='items',
        direction=ReplicationDirection.BIDIRECTIONAL,
        conflict_strategy=strategy,
        priority_fields=tuple(priority_fields),
    )


class FakeTargetStore:
    def __init__(self, pending=(), applied=()):
        self.pending = list(pending)
        self.applied = list(applied)
        self.calls = []

    def find_pending_for_record(self, table_name, record_id, direction, start, end):
        self.calls.append(('pending', direction, start, end))
        return [e for e in self.pending if start <= e.timestamp <= end]

    def find_applied_newer_for_record(self, table_name, record_id, direction, after):
        self.calls.append(('applied', direction, after))
        return [e for e in self.applied if e.timestamp > after]


class TestCompareValues:
    @pytest.mark.parametrize('a, b, expected', [
        (2, 10, -1),
        ('10', '9', 1),
        (1.5, '1.50', 0),
        (datetime(2024, 1, 2), '2024-01-01T23:59:59', 1),
        ('1.10.0', '1.9.9', 1),
        ('Apple', 'apple', 0),
        ('b', 'A', 1),
    ])
    def test_ordering(self, a, b, expected):
        assert compare_values(a, b) == expected

    def test_missing_value_is_not_comparable(self):
        assert compare_values(None, 1) is None
        assert compare_values('x', None) is None

    def test_booleans_are_not_numbers(self):
        assert compare_values(True, 'true') == 0


class TestDetector:
    def test_pending_within_window_and_applied_newer(self):
        store = FakeTargetStore(
            pending=[entry(20, F2L, seconds=10), entry(21, F2L, seconds=100)],
            applied=[entry(22, F2L, operation=ReplicationOperation.DELETE, seconds=5)],
        )
        detector = ConflictDetector(store, window_seconds=30)

        found = detector.detect(entry(1, L2F))

        assert [c.target_entry.id for c in found] == [20, 22]
        assert [c.conflict_type for c in found] == [ConflictType.CONCURRENT_UPDATE, ConflictType.UPDATE_AFTER_DELETE]
        assert all(call[1] == F2L for call in store.calls)

    def test_same_entry_found_twice_is_reported_once(self):
        shared = entry(30, L2F, seconds=1)
        detector = ConflictDetector(FakeTargetStore(pending=[shared], applied=[shared]))
        assert len(detector.detect(entry(2, F2L))) == 1

    def test_no_conflicts(self):
        assert ConflictDetector(FakeTargetStore()).detect(entry(1, L2F)) == []


class TestConflictType:
    @pytest.mark.parametrize('source, target, expected', [
        (ReplicationOperation.UPDATE, ReplicationOperation.UPDATE, ConflictType.CONCURRENT_UPDATE),
        (ReplicationOperation.DELETE, ReplicationOperation.UPDATE, ConflictType.DELETE_AFTER_UPDATE),
        (ReplicationOperation.UPDATE, ReplicationOperation.DELETE, ConflictType.UPDATE_AFTER_DELETE),
        (ReplicationOperation.INSERT, ReplicationOperation.INSERT, ConflictType.DUPLICATE_INSERT),
        (ReplicationOperation.INSERT, ReplicationOperation.DELETE, ConflictType.VERSION_MISMATCH),
    ])
    def test_classify(self, source, target, expected):
        assert ConflictType.classify(source, target) == expected


class TestResolver:
    def test_prefer_leader(self):
        c = conflict(entry(1, L2F), entry(2, F2L))
        ConflictResolver().resolve(c, table(ConflictResolutionStrategy.PREFER_LEADER))
        assert c.resolution == ConflictResolutionResult.RESOLVED_AUTOMATICALLY
        assert c.source_wins

        reverse = conflict(entry(2, F2L), entry(1, L2F))
        ConflictResolver().resolve(reverse, table(ConflictResolutionStrategy.PREFER_LEADER))
        assert reverse.resolved_entry == reverse.target_entry
        assert not reverse.source_wins

    def test_prefer_follower(self):
        c = conflict(entry(1, L2F), entry(2, F2L))
        ConflictResolver().resolve(c, table(ConflictResolutionStrategy.PREFER_FOLLOWER))
        assert c.resolved_entry == c.target_entry

    def test_last_write_wins_by_timestamp(self):
        c = conflict(entry(1, L2F, seconds=1), entry(2, F2L, seconds=5))
        ConflictResolver().resolve(c, table(ConflictResolutionStrategy.LAST_WRITE_WINS))
        assert c.resolved_entry == c.target_entry

    def test_last_write_wins_tie_uses_priority_fields(self):
        loader = lambda c, t: ({'version': 3}, {'version': 4})
        c = conflict(entry(1, L2F), entry(2, F2L))
        ConflictResolver(field_loader=loader).resolve(c, table(ConflictResolutionStrategy.LAST_WRITE_WINS))
        assert c.resolved_entry == c.target_entry
        assert 'version' in c.reason

    def test_last_write_wins_full_tie_prefers_source(self):
        loader = lambda c, t: ({'version': 3}, {'version': 3})
        c = conflict(entry(1, L2F), entry(2, F2L))
        ConflictResolver(field_loader=loader).resolve(c, table(ConflictResolutionStrategy.LAST_WRITE_WINS))
        assert c.source_wins

    def test_field_priority_first_differing_field_decides(self):
        loader = lambda c, t: ({'priority': 1, 'updated_at': '2024-01-02'}, {'priority': 1, 'updated_at': '2024-01-01'})
        c = conflict(entry(1, F2L), entry(2, L2F))
        strategy = table(ConflictResolutionStrategy.FIELD_PRIORITY, ['missing', 'priority', 'updated_at'])
        ConflictResolver(field_loader=loader).resolve(c, strategy)
        assert c.source_wins

    def test_field_priority_without_fields_prefers_leader(self):
        c = conflict(entry(1, F2L), entry(2, L2F))
        ConflictResolver().resolve(c, table(ConflictResolutionStrategy.FIELD_PRIORITY))
        assert c.resolved_entry == c.target_entry

    def test_manual_review(self):
        c = conflict(entry(1, L2F), entry(2, F2L))
        ConflictResolver().resolve(c, table(ConflictResolutionStrategy.MANUAL_REVIEW))
        assert c.resolution == ConflictResolutionResult.REQUIRES_MANUAL_REVIEW
        assert c.resolved_entry is None
        assert not c.source_wins

    def test_custom_hook_and_fallback(self):
        c = conflict(entry(1, L2F), entry(2, F2L))
        ConflictResolver(custom_resolver=lambda c, t: c.target_entry).resolve(
            c, table(ConflictResolutionStrategy.CUSTOM)
        )
        assert c.resolved_entry == c.target_entry

        fallback = conflict(entry(1, L2F), entry(2, F2L))
        ConflictResolver(custom_resolver=lambda c, t: None).resolve(
            fallback, table(ConflictResolutionStrategy.CUSTOM)
        )
        assert fallback.source_wins

    def test_resolver_error_marks_conflict_failed(self):
        def broken(c, t):
            raise RuntimeError('lookup failed')

        c = conflict(entry(1, L2F), entry(2, F2L))
        ConflictResolver(field_loader=broken).resolve(c, table(ConflictResolutionStrategy.FIELD_PRIORITY, ['version']))
        assert c.resolution == ConflictResolutionResult.FAILED
        assert c.resolved_entry is None
        assert 'lookup failed' in c.reason
