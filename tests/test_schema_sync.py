import sqlite3

import pytest
from sqlalchemy import Column, Index, Integer, MetaData, String, Table, inspect

from dbsync.models.config import TableConfig
from dbsync.models.schema import ColumnInfo
from dbsync.utils.ddl import SchemaSynchronizer, compare_columns, normalize_type

from .factories import create_items, items_table

pytestmark = pytest.mark.integration

ITEMS = TableConfig(table_name='items')


def wider_items(engine):
    """``items`` with an extra column and a secondary index."""
    table = items_table()
    table.append_column(Column('color', String(20)))
    Index('ix_items_name', table.c.name)
    table.metadata.create_all(engine)
    return table


def columns(engine, table_name='items'):
    return [c['name'] for c in inspect(engine).get_columns(table_name)]


def indexes(engine, table_name='items'):
    return sorted(i['name'] for i in inspect(engine).get_indexes(table_name))


@pytest.fixture
def synchronizer(leader_engine, follower_engine):
    return SchemaSynchronizer(leader_engine, follower_engine)


class TestNormalizeType:
    @pytest.mark.parametrize('raw, expected', [
        ('int(11)', ('INT', 'INT')),
        ('int(10) unsigned', ('INT', 'INT UNSIGNED')),
        ('INTEGER', ('INT', 'INT')),
        ('character varying(100)', ('VARCHAR', 'VARCHAR(100)')),
        ('numeric(10, 2)', ('DECIMAL', 'DECIMAL(10, 2)')),
        ('timestamp without time zone', ('TIMESTAMP', 'TIMESTAMP')),
        ('varchar(20)', ('VARCHAR', 'VARCHAR(20)')),
    ])
    def test_spellings(self, raw, expected):
        assert normalize_type(raw) == expected


class TestCompareColumns:
    def column(self, **overrides):
        values = dict(column_name='qty', data_type='INT', full_data_type='INT')
        values.update(overrides)
        return ColumnInfo(**values)

    def test_equal(self):
        assert compare_columns(self.column(), self.column()) == []

    def test_default_spelling_is_ignored(self):
        assert compare_columns(self.column(default_value="('0')"), self.column(default_value='0')) == []

    def test_reports_each_difference(self):
        changes = compare_columns(
            self.column(full_data_type='BIGINT', is_nullable=False, default_value='1'),
            self.column(),
        )
        assert len(changes) == 3
        assert changes[0] == 'type INT -> BIGINT'
        assert 'not null' in changes


class TestSyncTable:
    def test_in_sync(self, synchronizer, leader_engine, follower_engine):
        create_items(leader_engine)
        create_items(follower_engine)

        result = synchronizer.sync_table(ITEMS)

        assert result.success
        assert result.executed_statements == []
        assert not result.applied_differences.has_differences

    def test_adds_missing_column_and_index(self, synchronizer, leader_engine, follower_engine):
        wider_items(leader_engine)
        create_items(follower_engine)

        result = synchronizer.sync_table(ITEMS)

        assert result.success, result.error_message
        assert len(result.executed_statements) == 2
        assert 'ADD COLUMN' in result.executed_statements[0]
        assert 'color' in columns(follower_engine)
        assert indexes(follower_engine) == ['ix_items_name']

    def test_creates_missing_table(self, synchronizer, leader_engine, follower_engine):
        wider_items(leader_engine)

        result = synchronizer.sync_table(ITEMS)

        assert result.success, result.error_message
        assert result.applied_differences.table_missing
        assert result.executed_statements[0].startswith('CREATE TABLE')
        assert columns(follower_engine) == ['id', 'name', 'qty', 'updated_at', 'color']
        assert indexes(follower_engine) == ['ix_items_name']

    def test_changes_not_allowed(self, synchronizer, leader_engine, follower_engine):
        wider_items(leader_engine)
        create_items(follower_engine)

        result = synchronizer.sync_table(TableConfig(table_name='items', allow_schema_changes=False))

        assert result.success
        assert result.executed_statements == []
        assert result.applied_differences.columns_to_add[0].column_name == 'color'
        assert 'color' not in columns(follower_engine)

    @pytest.mark.skipif(sqlite3.sqlite_version_info < (3, 35, 0), reason="DROP COLUMN needs SQLite 3.35")
    def test_drops_extra_column(self, synchronizer, leader_engine, follower_engine):
        create_items(leader_engine)
        wider = items_table()
        wider.append_column(Column('legacy', Integer))
        wider.metadata.create_all(follower_engine)

        result = synchronizer.sync_table(ITEMS)

        assert result.success, result.error_message
        assert 'legacy' not in columns(follower_engine)

    def test_type_change_is_only_a_warning_on_sqlite(self, synchronizer, leader_engine, follower_engine):
        create_items(leader_engine)
        Table(
            'items', MetaData(),
            Column('id', Integer, primary_key=True),
            Column('name', String(50)),
            Column('qty', String(10)),
            Column('updated_at', String(30)),
        ).create(follower_engine)

        result = synchronizer.sync_table(ITEMS)

        assert result.success
        assert result.executed_statements == []
        assert len(result.applied_differences.warnings) == 2

    def test_missing_source_table_fails(self, synchronizer, follower_engine):
        create_items(follower_engine)

        result = synchronizer.sync_table(ITEMS)

        assert not result.success
        assert 'does not exist' in result.error_message

    def test_reverse_direction(self, leader_engine, follower_engine):
        create_items(leader_engine)
        wider_items(follower_engine)

        result = SchemaSynchronizer(follower_engine, leader_engine).sync_table(ITEMS)

        assert result.success, result.error_message
        assert 'color' in columns(leader_engine)
