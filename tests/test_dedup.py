from datetime import datetime, timedelta

from dbsync.models.log import ReplicationDirection, ReplicationLogEntry, ReplicationOperation
from dbsync.replication.dedup import collapse, deduplicate, deduplicate_groups

I = ReplicationOperation.INSERT
U = ReplicationOperation.UPDATE
D = ReplicationOperation.DELETE

BASE = datetime(2024, 1, 1, 12, 0, 0)


def entry(log_id, operation, record_id='1', seconds=None, table='items'):
    return ReplicationLogEntry(
        id=log_id,
        table_name=table,
        operation_type=operation,
        record_id=record_id,
        timestamp=BASE + timedelta(seconds=log_id if seconds is None else seconds),
        direction=ReplicationDirection.LEADER_TO_FOLLOWER,
    )


def ops(entries):
    return [(e.id, e.operation_type) for e in entries]


class TestCollapse:
    def test_single_entry_is_kept(self):
        only = entry(1, U)
        assert collapse([only]) is only

    def test_latest_delete_wins_without_recreate(self):
        assert collapse([entry(1, I), entry(2, U), entry(3, D)]).id == 3

    def test_insert_after_delete_wins(self):
        assert collapse([entry(1, U), entry(2, D), entry(3, I)]).id == 3

    def test_update_after_recreate_wins(self):
        assert collapse([entry(1, D), entry(2, I), entry(3, U), entry(4, U)]).id == 4

    def test_update_before_recreate_is_ignored(self):
        assert collapse([entry(1, U), entry(2, D), entry(3, I)]).operation_type == I

    def test_without_delete_most_recent_write_wins(self):
        assert collapse([entry(1, I), entry(2, U)]).id == 2
        assert collapse([entry(1, U), entry(2, I)]).id == 2

    def test_order_uses_timestamp_then_id(self):
        late_insert = entry(1, I, seconds=10)
        early_update = entry(2, U, seconds=5)
        assert collapse([late_insert, early_update]) is late_insert

        same_time = [entry(5, U, seconds=1), entry(4, I, seconds=1)]
        assert collapse(same_time).id == 5


class TestDeduplicate:
    def test_one_survivor_per_record_ordered_by_timestamp(self):
        batch = [
            entry(1, I, record_id='a', seconds=1),
            entry(2, I, record_id='b', seconds=2),
            entry(3, U, record_id='a', seconds=3),
            entry(4, D, record_id='b', seconds=4),
        ]
        assert ops(deduplicate(batch)) == [(3, U), (4, D)]

    def test_groups_carry_superseded_ids(self):
        batch = [entry(1, I), entry(2, U), entry(3, U, record_id='2')]
        groups = deduplicate_groups(batch)
        assert [sorted(g.ids) for g in groups] == [[1, 2], [3]]
        assert [e.id for e in groups[0].superseded] == [1]

    def test_same_record_id_in_different_tables_is_not_merged(self):
        batch = [entry(1, U, table='items'), entry(2, U, table='orders')]
        assert len(deduplicate(batch)) == 2

    def test_empty_batch(self):
        assert deduplicate([]) == []
