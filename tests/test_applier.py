"""
Applier behaviour against two SQLite databases with live capture triggers.
"""

import pytest
from sqlalchemy import Integer, String, event, select
from sqlalchemy.orm import mapped_column

from dbsync.models.records import ReplicableModel
from dbsync.replication.service import ReplicationService
from dbsync.utils.adapters import get_adapter
from dbsync.utils.log_store import get_status_table, replication_logs

from .factories import F2L, FOLLOWER_ID, L2F, Base, create_items, delete_row, read_rows, write_row

pytestmark = pytest.mark.integration


@pytest.fixture
def build(make_settings, leader_engine, follower_engine, no_sleep):
    created = []

    def factory(tables=None, follower_check=False, **overrides):
        leader_items = create_items(leader_engine)
        follower_items = create_items(follower_engine, with_check=follower_check)
        service = ReplicationService(
            make_settings(tables, **overrides),
            leader_engine=leader_engine,
            follower_engine=follower_engine,
            sleep=no_sleep,
        )
        service.ensure_state_tables()
        service.install_triggers()
        created.append(service)
        return service, leader_items, follower_items

    yield factory
    for service in created:
        service.close()


def log_count(engine):
    with engine.connect() as conn:
        return len(conn.execute(select(replication_logs.c.id)).all())


def leader_status(engine):
    status = get_status_table(f"replication_status_{FOLLOWER_ID}")
    with engine.connect() as conn:
        return {row.log_entry_id: row.error_message for row in conn.execute(select(status))}


class Ticket(ReplicableModel, Base):
    __tablename__ = 'tickets'

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    title = mapped_column(String(50))


class TestLeaderToFollower:
    def test_insert_update_delete_reach_follower(self, build, leader_engine, follower_engine):
        service, leader_items, follower_items = build()

        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})
        write_row(leader_engine, leader_items, {'id': 2, 'name': 'pear', 'qty': 5})
        result = service.process_stream(L2F, 'items')

        assert result.success
        assert result.fetched == 2
        assert result.applied == 2
        assert read_rows(follower_engine, follower_items)[2]['name'] == 'pear'

        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 9})
        delete_row(leader_engine, leader_items, 2)
        result = service.process_stream(L2F, 'items')

        rows = read_rows(follower_engine, follower_items)
        assert list(rows) == [1]
        assert rows[1]['qty'] == 9
        assert result.cursor == service.leader_store.latest_id('items')

    def test_cursor_key_is_follower_id(self, build, leader_engine):
        service, leader_items, _ = build()
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})

        result = service.process_stream(L2F, 'items')

        assert service.progress.get('items', FOLLOWER_ID).last_synced_id == result.cursor
        assert service.progress.get('items', f"{FOLLOWER_ID}_to_leader").last_synced_id == 0

    def test_processed_entries_are_not_fetched_again(self, build, leader_engine):
        service, leader_items, _ = build()
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})

        service.process_stream(L2F, 'items')
        again = service.process_stream(L2F, 'items')

        assert again.fetched == 0
        assert again.success

    def test_entries_for_one_record_collapse(self, build, leader_engine, follower_engine):
        service, leader_items, follower_items = build()
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 1})
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 2})
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})

        result = service.process_stream(L2F, 'items')

        assert result.fetched == 3
        assert result.applied == 1
        assert result.skipped == 2
        assert len(result.handled_ids) == 3
        assert read_rows(follower_engine, follower_items)[1]['qty'] == 3

    def test_update_of_missing_row_inserts_it(self, build, leader_engine, follower_engine):
        service, leader_items, follower_items = build()
        # only the update is captured
        write_row(leader_engine, leader_items, {'id': 4, 'name': 'kiwi', 'qty': 1}, suppressed=True)
        write_row(leader_engine, leader_items, {'id': 4, 'name': 'kiwi', 'qty': 7})

        result = service.process_stream(L2F, 'items')

        assert result.applied == 1
        assert read_rows(follower_engine, follower_items)[4]['qty'] == 7

    def test_delete_of_missing_row_is_skipped(self, build, leader_engine):
        service, leader_items, _ = build()
        write_row(leader_engine, leader_items, {'id': 5, 'name': 'plum', 'qty': 1}, suppressed=True)
        delete_row(leader_engine, leader_items, 5)

        result = service.process_stream(L2F, 'items')

        assert result.success
        assert result.applied == 0
        assert result.skipped == 1

    def test_vanished_source_row_is_skipped(self, build, leader_engine, follower_engine):
        service, leader_items, follower_items = build()
        write_row(leader_engine, leader_items, {'id': 6, 'name': 'fig', 'qty': 1})
        # row removed without capture before the batch reads it
        with leader_engine.begin() as conn:
            get_adapter(leader_engine).set_suppression(conn, True)
            conn.execute(leader_items.delete())
            get_adapter(leader_engine).set_suppression(conn, False)

        result = service.process_stream(L2F, 'items')

        assert result.skipped == 1
        assert read_rows(follower_engine, follower_items) == {}

    def test_applied_writes_are_not_captured_on_target(self, build, leader_engine, follower_engine):
        service, leader_items, _ = build(tables=[{'NAME': 'items', 'DIRECTION': 'Bidirectional'}])
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})

        service.process_stream(L2F, 'items')

        assert log_count(follower_engine) == 0
        assert service.process_stream(F2L, 'items').fetched == 0


class TestFollowerToLeader:
    def test_follower_changes_reach_leader(self, build, leader_engine, follower_engine):
        service, leader_items, follower_items = build(tables=[{'NAME': 'items', 'DIRECTION': 'FollowerToLeader'}])
        write_row(follower_engine, follower_items, {'id': 3, 'name': 'lime', 'qty': 2})

        result = service.process_stream(F2L, 'items')

        assert result.applied == 1
        assert read_rows(leader_engine, leader_items)[3]['name'] == 'lime'
        assert service.progress.get('items', f"{FOLLOWER_ID}_to_leader").last_synced_id == result.cursor
        assert log_count(leader_engine) == 0


class TestTypedRecords:
    def test_registered_class_is_used(self, build, leader_engine, follower_engine):
        service, leader_items, follower_items = build(tables=[{'NAME': 'items', 'ENTITY': 'tests.factories.Item'}])
        assert 'items' in service.registry

        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})
        service.process_stream(L2F, 'items')
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'green apple', 'qty': 4})
        write_row(leader_engine, leader_items, {'id': 2, 'name': 'pear', 'qty': 1})
        service.process_stream(L2F, 'items')
        delete_row(leader_engine, leader_items, 2)
        result = service.process_stream(L2F, 'items')

        assert result.applied == 1
        assert read_rows(follower_engine, follower_items) == {
            1: {'id': 1, 'name': 'green apple', 'qty': 4, 'updated_at': None},
        }

    def test_update_leaves_primary_key_alone(self, build, leader_engine, follower_engine):
        service, leader_items, follower_items = build(tables=[{'NAME': 'items', 'ENTITY': 'tests.factories.Item'}])
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})
        service.process_stream(L2F, 'items')

        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(follower_engine, 'before_cursor_execute', capture)
        try:
            write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 8})
            result = service.process_stream(L2F, 'items')
        finally:
            event.remove(follower_engine, 'before_cursor_execute', capture)

        assert result.applied == 1
        [item_update] = [s for s in statements if s.lstrip().upper().startswith('UPDATE ITEMS ')]
        set_clause = item_update.upper().split(' SET ', 1)[1].split(' WHERE ', 1)[0]
        assigned = [part.split('=')[0].strip() for part in set_clause.split(',')]
        assert 'QTY' in assigned
        assert 'ID' not in assigned
        assert read_rows(follower_engine, follower_items)[1]['qty'] == 8

    def test_apply_to_keeps_the_target_identity(self):
        source = Ticket(id=41, title='from leader')
        target = Ticket(id=7, title='local')

        source.apply_to(target)

        assert target.id == 7
        assert target.title == 'from leader'

    def test_unknown_record_class_excludes_table(self, make_settings, leader_engine, follower_engine):
        settings = make_settings(tables=[
            {'NAME': 'items'},
            {'NAME': 'orders', 'ENTITY': 'tests.factories.DoesNotExist'},
        ])
        service = ReplicationService(settings, leader_engine=leader_engine, follower_engine=follower_engine)

        assert list(service.tables) == ['items']
        assert 'orders' in service.get_status()['excluded_tables']


class TestFailures:
    def test_exhausted_entry_is_ledgered(self, build, leader_engine, follower_engine, no_sleep):
        service, leader_items, follower_items = build(follower_check=True, RETRY_BASE_DELAY_SECONDS=0.5)
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'broken', 'qty': -1})

        result = service.process_stream(L2F, 'items')

        assert not result.success
        assert result.failed == 1
        assert result.cursor == 0
        assert no_sleep.calls == [0.5, 1.0]

        failures = service.ledger.list_failures('items')
        assert len(failures) == 1
        assert failures[0].retry_count == 3
        assert failures[0].follower_server_id == FOLLOWER_ID
        assert read_rows(follower_engine, follower_items) == {}

        # marked with an error, so not pending any more
        assert service.process_stream(L2F, 'items').fetched == 0

    def test_failure_does_not_block_other_records(self, build, leader_engine, follower_engine):
        service, leader_items, follower_items = build(follower_check=True)
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'broken', 'qty': -1})
        write_row(leader_engine, leader_items, {'id': 2, 'name': 'fine', 'qty': 1})

        result = service.process_stream(L2F, 'items')

        assert result.applied == 1
        assert result.failed == 1
        assert result.cursor == service.leader_store.latest_id('items')
        assert list(read_rows(follower_engine, follower_items)) == [2]

    def test_missing_target_table_is_not_retried(self, make_settings, leader_engine, follower_engine, no_sleep):
        leader_items = create_items(leader_engine)
        service = ReplicationService(
            make_settings(), leader_engine=leader_engine, follower_engine=follower_engine, sleep=no_sleep
        )
        service.ensure_state_tables()
        service.install_triggers()
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 1})

        result = service.process_stream(L2F, 'items')

        assert not result.success
        assert result.cursor == 0
        failures = service.ledger.list_failures('items')
        assert [f.retry_count for f in failures] == [1]
        assert no_sleep.calls == []
        service.close()

    def test_batch_failure_is_retried_next_tick(self, build, leader_engine, follower_engine, monkeypatch):
        service, leader_items, follower_items = build()
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})
        write_row(leader_engine, leader_items, {'id': 2, 'name': 'pear', 'qty': 5})

        adapter = service.channels[L2F].adapter
        set_suppression = adapter.set_suppression
        raised = []

        def lose_connection_once(conn, enabled):
            if not enabled and not raised:
                raised.append(enabled)
                raise RuntimeError("server closed the connection")
            return set_suppression(conn, enabled)

        monkeypatch.setattr(adapter, 'set_suppression', lose_connection_once)

        first = service.process_stream(L2F, 'items')

        assert not first.success
        assert first.failed == 2
        assert first.cursor == 0
        assert 'server closed the connection' in first.error
        assert service.progress.get('items', FOLLOWER_ID).last_synced_id == 0
        assert service.ledger.list_failures() == []
        assert read_rows(follower_engine, follower_items) == {}
        assert all(message.startswith('Retry pending: ') for message in leader_status(leader_engine).values())

        second = service.process_stream(L2F, 'items')

        assert second.success
        assert second.fetched == 2
        assert second.applied == 2
        assert second.cursor == service.leader_store.latest_id('items')
        assert sorted(read_rows(follower_engine, follower_items)) == [1, 2]
        assert service.ledger.list_failures() == []
