"""
Shared builders for the replication tests.
"""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, MetaData, String, Table, insert, select, update
from sqlalchemy.orm import DeclarativeBase, mapped_column

from dbsync.conf import load_replication_settings
from dbsync.models.log import ReplicationDirection
from dbsync.models.records import ReplicableModel
from dbsync.utils.adapters import get_adapter
from dbsync.utils.triggers import TriggerInstaller

FOLLOWER_ID = 'branch01'


class Base(DeclarativeBase):
    pass


class Item(ReplicableModel, Base):
    __tablename__ = 'items'

    id = mapped_column(Integer, primary_key=True, autoincrement=False)
    name = mapped_column(String(50))
    qty = mapped_column(Integer)
    updated_at = mapped_column(DateTime)


def items_table(metadata=None, with_check=False) -> Table:
    """Definition of ``items``; the follower copy can reject negative quantities."""
    extra = [CheckConstraint('qty >= 0', name='ck_items_qty')] if with_check else []
    return Table(
        'items', metadata or MetaData(),
        Column('id', Integer, primary_key=True, autoincrement=False),
        Column('name', String(50)),
        Column('qty', Integer),
        Column('updated_at', DateTime),
        *extra
    )


def create_items(engine, with_check=False) -> Table:
    table = items_table(with_check=with_check)
    table.metadata.create_all(engine)
    return table


def raw_settings(leader_url, follower_url, tables=None, **overrides):
    raw = {
        'FOLLOWER_SERVER_ID': FOLLOWER_ID,
        'LEADER_SERVER_NAME': 'leader',
        'LEADER': {'URL': leader_url},
        'FOLLOWER': {'URL': follower_url},
        'TABLES': tables if tables is not None else [{'NAME': 'items'}],
        'RETRY_BASE_DELAY_SECONDS': 0,
        'INITIAL_LOAD_RETRY_BASE_SECONDS': 0,
    }
    raw.update(overrides)
    return raw


def build_settings(leader_url, follower_url, tables=None, **overrides):
    return load_replication_settings(raw_settings(leader_url, follower_url, tables, **overrides))


def install_triggers(engine, direction, server_name, table_config):
    installer = TriggerInstaller(engine, server_name, direction)
    return installer.install(table_config)


def write_row(engine, table, values, suppressed=False):
    """Insert or update one row; ``suppressed`` writes like the applier does."""
    adapter = get_adapter(engine)
    with engine.begin() as conn:
        if suppressed:
            adapter.set_suppression(conn, True)
        exists = conn.execute(select(table.c.id).where(table.c.id == values['id'])).first()
        if exists:
            conn.execute(update(table).where(table.c.id == values['id']).values(**values))
        else:
            conn.execute(insert(table).values(**values))
        if suppressed:
            adapter.set_suppression(conn, False)


def delete_row(engine, table, row_id):
    with engine.begin() as conn:
        conn.execute(table.delete().where(table.c.id == row_id))


def read_rows(engine, table):
    with engine.connect() as conn:
        return {row.id: dict(row._mapping) for row in conn.execute(select(table).order_by(table.c.id))}


L2F = ReplicationDirection.LEADER_TO_FOLLOWER
F2L = ReplicationDirection.FOLLOWER_TO_LEADER
