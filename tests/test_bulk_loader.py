import pytest
from sqlalchemy import Column, Integer, LargeBinary, MetaData, Table, func, insert, select

from dbsync.exceptions import BulkLoadError
from dbsync.models.config import TableConfig
from dbsync.utils.bulk_loader import BulkLoader
from dbsync.utils.log_store import replication_logs

from .factories import F2L, FOLLOWER_ID, L2F, create_items, install_triggers, read_rows, write_row

pytestmark = pytest.mark.integration

ITEMS = TableConfig(table_name='items', direction=L2F)


@pytest.fixture
def tables(leader_engine, follower_engine, stores):
    leader_items = create_items(leader_engine)
    follower_items = create_items(follower_engine)
    install_triggers(leader_engine, L2F, 'leader', ITEMS)
    return leader_items, follower_items


@pytest.fixture
def loader(leader_engine, follower_engine, stores, no_sleep):
    return BulkLoader(
        source_engine=leader_engine,
        target_engine=follower_engine,
        leader_store=stores['leader'],
        progress=stores['progress'],
        cursor_key=FOLLOWER_ID,
        window_size=2,
        window_concurrency=1,
        sleep=no_sleep,
    )


def seed(engine, table, count):
    for i in range(1, count + 1):
        write_row(engine, table, {'id': i, 'name': f'item {i}', 'qty': i})


class TestLoadTable:
    def test_replaces_follower_rows(self, loader, tables, leader_engine, follower_engine):
        leader_items, follower_items = tables
        seed(leader_engine, leader_items, 5)
        write_row(follower_engine, follower_items, {'id': 99, 'name': 'stale', 'qty': 0})

        written = loader.load_table(ITEMS)

        assert written == 5
        rows = read_rows(follower_engine, follower_items)
        assert sorted(rows) == [1, 2, 3, 4, 5]
        assert rows[3]['name'] == 'item 3'

    def test_cursor_set_to_log_id_captured_before_copy(self, loader, tables, stores, leader_engine):
        leader_items, _ = tables
        seed(leader_engine, leader_items, 3)

        loader.load_table(ITEMS)

        assert stores['progress'].get('items', FOLLOWER_ID).last_synced_id == 3
        assert stores['leader'].count_pending('items', L2F, 3) == 0

    def test_cursor_never_moves_backwards(self, loader, tables, stores):
        stores['progress'].advance('items', FOLLOWER_ID, 40)
        loader.load_table(ITEMS)
        assert stores['progress'].get('items', FOLLOWER_ID).last_synced_id == 40

    def test_follower_triggers_stay_silent(self, loader, tables, leader_engine, follower_engine):
        leader_items, _ = tables
        install_triggers(follower_engine, F2L, FOLLOWER_ID, ITEMS)
        seed(leader_engine, leader_items, 3)

        loader.load_table(ITEMS)

        with follower_engine.connect() as conn:
            assert conn.execute(select(func.count()).select_from(replication_logs)).scalar() == 0

    def test_empty_table(self, loader, tables, follower_engine):
        _, follower_items = tables
        write_row(follower_engine, follower_items, {'id': 1, 'name': 'stale', 'qty': 0})

        assert loader.load_table(ITEMS) == 0
        assert read_rows(follower_engine, follower_items) == {}

    def test_unknown_primary_key(self, loader, tables):
        with pytest.raises(BulkLoadError):
            loader.load_table(TableConfig(table_name='items', primary_key='sku'))

    def test_window_size_must_be_positive(self, leader_engine, follower_engine):
        with pytest.raises(ValueError):
            BulkLoader(leader_engine, follower_engine, window_size=0)


def test_binary_values_keep_their_bytes(loader, stores, leader_engine, follower_engine):
    def attachments(engine):
        table = Table(
            'attachments', MetaData(),
            Column('id', Integer, primary_key=True, autoincrement=False),
            Column('payload', LargeBinary),
        )
        table.metadata.create_all(engine)
        return table

    leader_table = attachments(leader_engine)
    follower_table = attachments(follower_engine)
    payloads = {1: b'\x01', 2: b'\x00', 3: b'\xca\xfe', 4: None}
    with leader_engine.begin() as conn:
        conn.execute(insert(leader_table), [{'id': k, 'payload': v} for k, v in payloads.items()])

    assert loader.load_table(TableConfig(table_name='attachments', direction=L2F)) == 4

    with follower_engine.connect() as conn:
        loaded = {row.id: row.payload for row in conn.execute(select(follower_table))}
    assert loaded == payloads
