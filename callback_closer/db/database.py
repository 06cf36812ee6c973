"""
Database connection and session management.
"""

import logging
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from callback_closer.config.settings import settings

logger = logging.getLogger(__name__)


def enable_sqlite_transactions(engine: Engine) -> Engine:
    """
    Let SQLAlchemy own BEGIN on pysqlite connections.

    The sqlite3 driver defers BEGIN until the first write, which breaks the
    read-after-conflict pattern used for idempotent inserts.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine for the given URL with the project's defaults."""
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        return enable_sqlite_transactions(create_engine(database_url, echo=settings.sql_echo, **kwargs))

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Check connection before using from pool
        pool_recycle=3600,   # Recycle connections after 1 hour
        echo=settings.sql_echo,
        **kwargs
    )


# Create SQLAlchemy engine
engine = build_engine(settings.database_url)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def get_db():
    """
    Get database session.

    Yields:
        SQLAlchemy session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def init_db():
    """
    Initialize database and create tables.
    """
    try:
        # Import models to ensure they are registered with Base
        from callback_closer.db import models  # noqa: F401

        # Create tables
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
