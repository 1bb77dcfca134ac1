"""Database engine construction and table creation using SQLModel."""

import logging
import sqlite3
from functools import lru_cache

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from tasklane.config import get_settings

logger = logging.getLogger(__name__)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    """SQLite ignores foreign keys unless asked; children rely on ON DELETE SET NULL."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def normalize_database_url(database_url: str) -> str:
    """Rewrite ``postgres://`` URLs (as handed out by hosted Postgres providers)
    to the ``postgresql://`` scheme SQLAlchemy expects."""
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://"):]
    return database_url


def build_engine(database_url: str) -> Engine:
    """Create an engine for ``database_url``."""
    database_url = normalize_database_url(database_url)
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=False, pool_pre_ping=True, connect_args=connect_args)


@lru_cache
def get_engine() -> Engine:
    """Return the process-wide engine for the configured database."""
    return build_engine(get_settings().database_url)


def create_db_and_tables(engine: Engine) -> None:
    """Create all tables from SQLModel metadata."""
    # Imported for its side effect of registering the tasks table.
    from tasklane import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables ensured on %s", engine.url.render_as_string(hide_password=True))
