import logging

import pytest

from dbsync.conf import load_replication_settings
from dbsync.exceptions import ConfigurationError
from dbsync.models.config import (
    ConflictResolutionStrategy,
    SchemaSyncStrategy,
    TableSyncMode,
    parse_direction,
)
from dbsync.models.log import ReplicationDirection

from .factories import raw_settings


def load(tables, **overrides):
    return load_replication_settings(raw_settings('sqlite://', 'sqlite://', tables, **overrides))


class TestLoadReplicationSettings:
    def test_defaults(self):
        settings = load([{'NAME': 'items'}])
        table = settings.tables[0]

        assert settings.batch_size == 1000
        assert settings.data_retention_days == 30
        assert settings.conflict_window_seconds == 30
        assert settings.max_retry_attempts == 3
        assert table.primary_key == 'id'
        assert table.direction == ReplicationDirection.LEADER_TO_FOLLOWER
        assert table.conflict_strategy == ConflictResolutionStrategy.PREFER_LEADER
        assert table.sync_mode == TableSyncMode.NO_ENTITY
        assert table.schema_sync == SchemaSyncStrategy.ON_STARTUP
        assert table.initialize_existing_data

    def test_status_tables_and_cursor_keys(self):
        settings = load([{'NAME': 'items'}])
        assert settings.leader_status_table == 'replication_status_branch01'
        assert settings.follower_status_table == 'replication_status_branch01_to_leader'
        assert settings.cursor_key(ReplicationDirection.LEADER_TO_FOLLOWER) == 'branch01'
        assert settings.cursor_key(ReplicationDirection.FOLLOWER_TO_LEADER) == 'branch01_to_leader'

    def test_table_options(self):
        settings = load([{
            'NAME': 'orders',
            'PRIMARY_KEY': 'order_id',
            'DIRECTION': 'bidirectional',
            'CONFLICT_STRATEGY': 'field_priority',
            'PRIORITY_FIELDS': ['version'],
            'SCHEMA_SYNC': 'OnStartupAndPeriodic',
            'INTERVAL_SECONDS': 2,
            'ALLOW_SCHEMA_CHANGES': False,
        }])
        table = settings.get_table('orders')

        assert table.primary_key == 'order_id'
        assert table.is_bidirectional
        assert table.replicates_to_follower and table.replicates_to_leader
        assert table.conflict_strategy == ConflictResolutionStrategy.FIELD_PRIORITY
        assert table.priority_fields == ('version',)
        assert table.schema_sync.runs_on_startup and table.schema_sync.runs_periodically
        assert table.interval_seconds == 2
        assert not table.allow_schema_changes

    def test_entity_selects_entity_mode(self):
        table = load([{'NAME': 'items', 'ENTITY': 'tests.factories.Item'}]).tables[0]
        assert table.sync_mode == TableSyncMode.ENTITY

    def test_unknown_strategy_falls_back_with_warning(self, caplog):
        raw = raw_settings('sqlite://', 'sqlite://', [{'NAME': 'items', 'CONFLICT_STRATEGY': 'coin_flip'}])
        with caplog.at_level(logging.WARNING):
            table = load_replication_settings(raw, log=logging.getLogger('tests.config')).tables[0]
        assert table.conflict_strategy == ConflictResolutionStrategy.PREFER_LEADER
        assert 'coin_flip' in caplog.text

    @pytest.mark.parametrize('bad', [
        {'NAME': 'items; drop table x'},
        {'NAME': 'items', 'DIRECTION': 'sideways'},
        {'NAME': 'items', 'SYNC_MODE': 'Entity'},
        {'NAME': 'items', 'INTERVAL_SECONDS': 0},
        {'NAME': 'items', 'PRIMARY_KEY': 'a b'},
    ])
    def test_invalid_tables_are_skipped(self, bad):
        settings = load([bad, {'NAME': 'products'}])
        assert [t.table_name for t in settings.tables] == ['products']

    def test_duplicate_table_is_skipped(self):
        settings = load([{'NAME': 'items'}, {'NAME': 'items', 'DIRECTION': 'FollowerToLeader'}])
        assert len(settings.tables) == 1
        assert settings.tables[0].direction == ReplicationDirection.LEADER_TO_FOLLOWER

    def test_no_usable_tables(self):
        with pytest.raises(ConfigurationError):
            load([{'NAME': 'items', 'DIRECTION': 'sideways'}])

    @pytest.mark.parametrize('overrides', [
        {'FOLLOWER_SERVER_ID': ''},
        {'FOLLOWER_SERVER_ID': 'branch-01'},
        {'LEADER': None},
        {'BATCH_SIZE': 0},
        {'CONFLICT_WINDOW_SECONDS': 'soon'},
    ])
    def test_invalid_global_settings(self, overrides):
        with pytest.raises(ConfigurationError):
            load([{'NAME': 'items'}], **overrides)

    def test_missing_settings(self, settings):
        settings.REPLICATION = None
        with pytest.raises(ConfigurationError):
            load_replication_settings()


class TestParseDirection:
    @pytest.mark.parametrize('value, expected', [
        ('LeaderToFollower', ReplicationDirection.LEADER_TO_FOLLOWER),
        ('follower_to_leader', ReplicationDirection.FOLLOWER_TO_LEADER),
        (2, ReplicationDirection.BIDIRECTIONAL),
        ('1', ReplicationDirection.FOLLOWER_TO_LEADER),
    ])
    def test_names_and_numbers(self, value, expected):
        assert parse_direction(value) == expected

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            parse_direction(7)
