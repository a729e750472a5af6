"""
Shared fixtures: two SQLite files stand in for the leader and the follower.
"""

import pytest

from dbsync.models.config import DatabaseTarget
from dbsync.utils.database_utils import get_database_engine
from dbsync.utils.log_store import ConflictLogStore, FailureLedger, ReplicationLogStore, SyncProgressStore

from .factories import FOLLOWER_ID, build_settings


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: tests running the engine against SQLite databases")


def _engine(path, name):
    return get_database_engine(DatabaseTarget(name=name, url=f"sqlite:///{path}"))


@pytest.fixture
def leader_url(tmp_path):
    return f"sqlite:///{tmp_path / 'leader.db'}"


@pytest.fixture
def follower_url(tmp_path):
    return f"sqlite:///{tmp_path / 'follower.db'}"


@pytest.fixture
def leader_engine(tmp_path):
    engine = _engine(tmp_path / 'leader.db', 'leader')
    yield engine
    engine.dispose()


@pytest.fixture
def follower_engine(tmp_path):
    engine = _engine(tmp_path / 'follower.db', 'follower')
    yield engine
    engine.dispose()


@pytest.fixture
def no_sleep():
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep


@pytest.fixture
def make_settings(leader_url, follower_url):
    def factory(tables=None, **overrides):
        return build_settings(leader_url, follower_url, tables, **overrides)
    return factory


@pytest.fixture
def stores(leader_engine, follower_engine):
    """State stores laid out the way the service lays them out."""
    leader_store = ReplicationLogStore(leader_engine, f"replication_status_{FOLLOWER_ID}")
    follower_store = ReplicationLogStore(follower_engine, f"replication_status_{FOLLOWER_ID}_to_leader")
    progress = SyncProgressStore(follower_engine)
    ledger = FailureLedger(follower_engine)
    conflict_log = ConflictLogStore(follower_engine)
    for store in (leader_store, follower_store, progress, ledger, conflict_log):
        store.ensure_tables()
    return {
        'leader': leader_store,
        'follower': follower_store,
        'progress': progress,
        'ledger': ledger,
        'conflicts': conflict_log,
    }
