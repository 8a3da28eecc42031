"""Database configuration and helper utilities."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
import logging
from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from encore.config import load_config


class Base(DeclarativeBase):
    pass


metadata = Base.metadata


_engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None

_logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


def _synchronous_url(url: URL) -> URL:
    driver = url.drivername.lower()
    if driver in {"sqlite", "sqlite+aiosqlite"}:
        return url.set(drivername="sqlite+pysqlite")
    if driver == "postgresql+asyncpg":
        return url.set(drivername="postgresql+psycopg")
    return url


def _database_file_path(url: URL) -> Path | None:
    if not url.drivername.startswith("sqlite"):
        return None
    database = url.database
    if not database or database == ":memory:":
        return None
    path = Path(database)
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    return path


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    sync_url = _synchronous_url(url)
    connect_args: dict[str, object] = {}
    if sync_url.drivername.startswith("sqlite"):
        # Worker threads share the engine; writers wait instead of failing fast.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    engine = create_engine(sync_url, future=True, connect_args=connect_args)
    if sync_url.drivername.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _dispose_engine() -> None:
    global _engine, SessionLocal

    if _engine is not None:
        _engine.dispose()

    _engine = None
    SessionLocal = None


def _ensure_engine() -> Engine:
    global _engine, SessionLocal

    database_url = load_config().database.url
    target_url = _synchronous_url(make_url(database_url)).render_as_string(hide_password=False)

    if _engine is not None and _engine.url.render_as_string(hide_password=False) == target_url:
        return _engine

    _dispose_engine()

    path = _database_file_path(make_url(database_url))
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)

    _engine = _build_engine(database_url)
    SessionLocal = sessionmaker(
        bind=_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    return _engine


def get_session() -> Session:
    if SessionLocal is None:
        _ensure_engine()
    if SessionLocal is None:
        raise RuntimeError("Database session factory is not initialized.")
    return SessionLocal()


@contextmanager
def session_scope() -> Iterator[Session]:
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Create all tables that do not exist yet."""

    engine = _ensure_engine()

    from encore import models  # noqa: F401

    Base.metadata.create_all(bind=engine, checkfirst=True)
    _logger.info("Database bootstrap completed", extra={"event": "database.bootstrap"})


def reset_engine_for_tests() -> None:
    """Reset the cached engine/session so tests get a clean database handle."""

    _dispose_engine()


__all__ = [
    "Base",
    "metadata",
    "get_session",
    "SessionFactory",
    "session_scope",
    "init_db",
    "reset_engine_for_tests",
]
