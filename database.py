"""
Database connection and session management for CareCircle

The notification engines run outside request handlers, so besides the
FastAPI dependency there is a committing context manager for jobs.
"""

import logging
from sqlalchemy import create_engine, event, inspect, text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Dict, Generator

from config import settings


logger = logging.getLogger(__name__)


def build_engine(url: str, echo: bool = False) -> Engine:
    """Engine for the notification store; SQLite gets a shared pool and FK checks"""
    if url.startswith("sqlite"):
        sqlite_engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo
        )

        @event.listens_for(sqlite_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    # PostgreSQL: scheduled runs and API requests share the pool
    return create_engine(
        url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Base class for ORM models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI routes to get database session.
    Automatically closes session after request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Session for scheduler runs that were not handed one.

    Commits on exit, rolls back if the block raises.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """
    Create the profile, medication, companion, push subscription and
    notification history tables if they do not exist.
    """
    # Import models to register them with Base
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized at: {settings.DATABASE_URL}")


class DatabaseHealthCheck:
    """Database health check utilities"""

    @staticmethod
    def is_connected() -> bool:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    @staticmethod
    def get_table_counts() -> Dict[str, int]:
        """Row counts for every mapped table that exists"""
        counts = {}
        with engine.connect() as conn:
            for table_name in inspect(engine).get_table_names():
                table = Base.metadata.tables.get(table_name)
                if table is None:
                    continue
                counts[table_name] = conn.execute(
                    select(func.count()).select_from(table)
                ).scalar()
        return counts


# Export commonly used items
__all__ = [
    "engine",
    "build_engine",
    "SessionLocal",
    "Base",
    "get_db",
    "get_db_context",
    "init_db",
    "DatabaseHealthCheck"
]
