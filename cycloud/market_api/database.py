"""Database engine setup and schema verification for the market API."""

import logging

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


class SchemaDriftError(RuntimeError):
    """An existing table does not match the models. The service refuses to boot."""


def _enable_sqlite_serializable(engine: Engine):
    # pysqlite defers BEGIN; take the write lock up front so that concurrent
    # transactions serialize like row-locked ones on PostgreSQL
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite engines get multithreaded access and serialized transactions.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _enable_sqlite_serializable(engine)
    else:
        engine = create_engine(database_url, pool_pre_ping=True)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_schema(engine: Engine):
    """
    Create missing tables and verify the existing ones.

    Raises:
        SchemaDriftError: If a table exists with different columns.
    """
    inspector = inspect(engine)
    existing = set(inspector.get_table_names())

    for table in Base.metadata.sorted_tables:
        if table.name not in existing:
            continue
        found = {column["name"] for column in inspector.get_columns(table.name)}
        expected = {column.name for column in table.columns}
        if found != expected:
            missing = sorted(expected - found)
            unexpected = sorted(found - expected)
            raise SchemaDriftError(
                f"table {table.name!r} does not match the models "
                f"(missing: {missing}, unexpected: {unexpected}); migrate it before starting"
            )

    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ready (%d tables)", len(Base.metadata.sorted_tables))
