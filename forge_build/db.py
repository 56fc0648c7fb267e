"""Database engine and session management for forge_build.

The object store keeps every resource as one JSON row. A SQLite file is
shared by the manager and by short-lived CLI commands such as ``apply``,
so file databases run in WAL mode with a busy timeout; in-memory
databases share a single connection so that every thread sees the same
data.
"""

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from forge_build.config import get_settings

SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Base class for the object store tables."""

    pass


def is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///") or ":memory:" in db_url


def _set_sqlite_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def get_engine(db_url: str | None = None) -> Any:
    """Create and return a SQLAlchemy engine for the object store.

    Args:
        db_url: Database URL. If not provided, uses settings default.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    if not db_url.startswith("sqlite"):
        return create_engine(db_url, echo=False)

    connect_args = {"check_same_thread": False}
    if is_memory_url(db_url):
        return create_engine(
            db_url, connect_args=connect_args, poolclass=StaticPool, echo=False
        )

    engine = create_engine(db_url, connect_args=connect_args, echo=False)
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Create and return a session factory.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.

    Returns:
        Session factory (sessionmaker).
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Run one store operation in a transaction, rolled back on error.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create the object store tables if they do not exist.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    # Register the resource table with the mapper.
    from forge_build.store import models as store_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "SQLITE_BUSY_TIMEOUT_MS",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "is_memory_url",
]
