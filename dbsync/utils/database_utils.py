"""
Database utility functions for connection management
Supports: MySQL, PostgreSQL, SQLite
"""

import logging
from typing import Optional, Tuple
from urllib.parse import quote_plus

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine

from dbsync.encryption import decrypt_password
from dbsync.exceptions import DatabaseConnectionError
from dbsync.models.config import DatabaseTarget

logger = logging.getLogger(__name__)


def build_connection_string(target: DatabaseTarget) -> str:
    """
    Build SQLAlchemy connection string from a DatabaseTarget

    Args:
        target: DatabaseTarget from the REPLICATION settings

    Returns:
        str: SQLAlchemy connection string

    Raises:
        ValueError: If database type is not supported
    """
    if target.url:
        return target.url

    db_type = target.engine.lower()
    host = target.host
    # URL-encode username and password to handle special characters (@, :, /, etc.)
    username = quote_plus(target.user or '')
    plain_password = decrypt_password(target.encrypted_password) if target.encrypted_password else target.password
    password = quote_plus(plain_password or '')
    database = target.database

    default_ports = {'mysql': 3306, 'postgresql': 5432}
    port = target.port or default_ports.get(db_type)

    connection_strings = {
        'mysql': f"mysql+pymysql://{username}:{password}@{host}:{port}/{database}?charset=utf8mb4",
        'postgresql': f"postgresql+psycopg2://{username}:{password}@{host}:{port}/{database}",
        'sqlite': f"sqlite:///{database}",
    }

    if db_type not in connection_strings:
        raise ValueError(f"Unsupported database type: {db_type}")

    return connection_strings[db_type]


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy issue BEGIN itself so SAVEPOINT works with pysqlite.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_database_engine(target: DatabaseTarget, pool_size: int = 5) -> Engine:
    """
    Create SQLAlchemy engine for a replication database

    Args:
        target: DatabaseTarget instance
        pool_size: Connection pool size (default: 5)

    Returns:
        Engine: SQLAlchemy engine instance

    Raises:
        DatabaseConnectionError: If the engine cannot be created
    """
    try:
        connection_string = build_connection_string(target)

        if connection_string.startswith('sqlite'):
            engine = create_engine(
                connection_string,
                pool_size=pool_size,
                connect_args={'check_same_thread': False, 'timeout': 30},
                echo=False
            )
            _enable_sqlite_savepoints(engine)
        else:
            connect_args = {}
            if connection_string.startswith('mysql'):
                # LOAD DATA LOCAL INFILE for the bulk loader
                connect_args['local_infile'] = True
            connect_args.update(target.options.get('CONNECT_ARGS', {}))
            engine = create_engine(
                connection_string,
                pool_size=pool_size,
                pool_pre_ping=True,  # Test connections before using
                pool_recycle=3600,   # Recycle connections after 1 hour
                connect_args=connect_args,
                echo=False
            )

        logger.info(f"Created database engine for {target.name} ({engine.dialect.name})")
        return engine

    except Exception as e:
        error_msg = f"Failed to create database engine for {target.name}: {str(e)}"
        logger.error(error_msg)
        raise DatabaseConnectionError(error_msg) from e


def test_database_connection(engine: Engine, name: str = 'database') -> Tuple[bool, Optional[str]]:
    """
    Test database connection

    Args:
        engine: Engine to test
        name: Label used in log messages

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.info(f"Successfully tested connection: {name}")
        return True, None

    except Exception as e:
        error_msg = f"Connection test failed: {str(e)}"
        logger.error(f"Connection test failed for {name}: {error_msg}")
        return False, error_msg
