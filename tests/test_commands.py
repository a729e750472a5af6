"""
Management commands run against settings.REPLICATION.
"""

from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError
from sqlalchemy import inspect

from .factories import create_items, raw_settings, read_rows, write_row

pytestmark = pytest.mark.integration


@pytest.fixture
def replication(settings, leader_url, follower_url):
    settings.REPLICATION = raw_settings(leader_url, follower_url)
    return settings.REPLICATION


def run(name, *args, **options):
    out = StringIO()
    call_command(name, *args, stdout=out, **options)
    return out.getvalue()


class TestSettings:
    def test_missing_settings(self, settings):
        settings.REPLICATION = {}
        with pytest.raises(CommandError, match="Invalid replication settings"):
            run('replication_status')

    def test_no_usable_tables(self, settings, leader_url, follower_url):
        settings.REPLICATION = raw_settings(leader_url, follower_url, tables=[{'NAME': 'items', 'DIRECTION': 'Sideways'}])
        with pytest.raises(CommandError):
            run('failed_data_stats')


class TestReplicationStatus:
    def test_status_without_gaps(self, replication, leader_engine, follower_engine):
        create_items(leader_engine)
        create_items(follower_engine)
        run('install_triggers')

        output = run('replication_status')

        assert "FOLLOWER: branch01" in output
        assert "items: Bidirectional" in output
        assert "No synchronization gaps" in output

    def test_gap_and_recover(self, replication, leader_engine, follower_engine):
        leader_items = create_items(leader_engine)
        follower_items = create_items(follower_engine)
        run('install_triggers')
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})

        output = run('replication_status')
        assert "1 synchronization gap(s)" in output
        assert "items LeaderToFollower: 1 pending" in output
        assert read_rows(follower_engine, follower_items) == {}

        output = run('replication_status', recover=True)
        assert "🔄" in output
        assert read_rows(follower_engine, follower_items)[1]['name'] == 'apple'
        assert "No synchronization gaps" in run('replication_status')


class TestInstallTriggers:
    def test_installs(self, replication, leader_engine, follower_engine):
        create_items(leader_engine)
        create_items(follower_engine)

        output = run('install_triggers')

        assert "✅" in output
        assert 'replication_status_branch01' in inspect(leader_engine).get_table_names()

    def test_missing_table_fails(self, replication, leader_engine):
        create_items(leader_engine)
        with pytest.raises(CommandError):
            run('install_triggers')


class TestFailedDataStats:
    def test_no_failures(self, replication, leader_engine, follower_engine):
        create_items(leader_engine)
        create_items(follower_engine)
        run('install_triggers')

        output = run('failed_data_stats')

        assert "FAILED DATA: 0 entries" in output
        assert "No failed data" in output

    def test_retry_without_failures(self, replication, leader_engine, follower_engine):
        create_items(leader_engine)
        create_items(follower_engine)
        run('install_triggers')

        assert "✅" in run('retry_failed_data')


class TestSyncSchema:
    def test_requires_table_or_all(self, replication):
        with pytest.raises(CommandError, match="--all"):
            run('sync_schema')

    def test_creates_follower_table(self, replication, leader_engine, follower_engine):
        create_items(leader_engine)

        output = run('sync_schema', 'items')

        assert "✅ items" in output
        assert 'items' in inspect(follower_engine).get_table_names()

    def test_unknown_table(self, replication):
        with pytest.raises(CommandError, match="1 table"):
            run('sync_schema', 'ghosts')


class TestResyncTable:
    def test_resync_copies_rows(self, replication, leader_engine, follower_engine):
        leader_items = create_items(leader_engine)
        follower_items = create_items(follower_engine)
        write_row(leader_engine, leader_items, {'id': 1, 'name': 'apple', 'qty': 3})
        write_row(follower_engine, follower_items, {'id': 9, 'name': 'stale', 'qty': 0})

        assert "✅" in run('resync_table', 'items')
        assert list(read_rows(follower_engine, follower_items)) == [1]
