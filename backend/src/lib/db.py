"""
Database engine and session management using SQLAlchemy 2.x.

The same code runs on SQLite (development, tests) and PostgreSQL; the
reconciler relies only on conditional UPDATEs, which both support.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from contextlib import contextmanager
from typing import Any, Dict, Generator

from src.lib.settings import settings


# Base class for all SQLAlchemy models
class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def engine_options(database_url: str) -> Dict[str, Any]:
    """
    Engine keyword arguments for the given backend.

    SQLite gets a longer busy timeout so concurrent receipt writers wait for
    the write lock instead of failing; other backends get a sized pool.
    """
    if database_url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }
    return {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": 5,
        "max_overflow": 10,
    }


def create_db_engine(database_url: str, echo: bool = False, **overrides: Any) -> Engine:
    """Create an engine and enable SQLite foreign keys when needed."""
    options = {**engine_options(database_url), **overrides}
    db_engine = create_engine(database_url, echo=echo, **options)

    if database_url.startswith("sqlite"):
        @event.listens_for(db_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


engine = create_db_engine(settings.database_url, echo=settings.debug)


# Session factory
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI routes."""
    with SessionLocal() as db:
        yield db


@contextmanager
def get_db_context(session_factory: sessionmaker = SessionLocal) -> Generator[Session, None, None]:
    """Session for jobs and background tasks: commit on success, roll back on error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine = engine):
    """Create any missing tables for the registered models."""
    import src.models  # noqa: F401  (registers models with Base.metadata)
    Base.metadata.create_all(bind=bind)


def drop_db(bind: Engine = engine):
    """Drop every table; test teardown only."""
    Base.metadata.drop_all(bind=bind)
