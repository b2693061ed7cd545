"""Database utilities for configuring SQLAlchemy sessions and transactions."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from threading import Lock

from pydantic import BaseModel, Field
from sqlalchemy import Engine, create_engine, event, inspect, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConflictError, PersistenceError
from .wled.utils import logger

DEFAULT_DATABASE_URL = "sqlite:///data/orchestrator.db"


class DatabaseSettings(BaseModel):
    """Configuration values for the database connection."""

    url: str = Field(default=DEFAULT_DATABASE_URL)
    echo: bool = Field(default=False)

    @classmethod
    def load(cls) -> DatabaseSettings:
        return cls(
            url=os.getenv("ORCHESTRATOR_DB_URL") or DEFAULT_DATABASE_URL,
            echo=os.getenv("ORCHESTRATOR_DB_ECHO", "false").lower()
            in {"1", "true", "yes", "on"},
        )


@lru_cache
def get_database_settings() -> DatabaseSettings:
    """Return cached database settings."""
    return DatabaseSettings.load()


_engine_lock = Lock()
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _is_memory_sqlite(url: str) -> bool:
    return url in {"sqlite://", "sqlite:///:memory:"}


def _ensure_sqlite_directory(url: str) -> None:
    if url.startswith("sqlite:///") and not _is_memory_sqlite(url):
        db_path = Path(url.replace("sqlite:///", "", 1))
        db_path.parent.mkdir(parents=True, exist_ok=True)


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _prepare_schema(engine: Engine) -> None:
    """Ensure tables exist and apply simple migrations for legacy databases."""
    from .db_models import Base  # Local import to avoid circular deps

    Base.metadata.create_all(engine)
    inspector = inspect(engine)

    legacy_columns = {
        "instances": ("display_order", "INTEGER NOT NULL DEFAULT 0"),
        "presets": ("display_order", "INTEGER NOT NULL DEFAULT 0"),
        "preset_instances": ("position", "INTEGER NOT NULL DEFAULT 0"),
    }
    for table, (column, ddl) in legacy_columns.items():
        if table not in inspector.get_table_names():
            continue
        columns = {item["name"] for item in inspector.get_columns(table)}
        if column not in columns:
            logger.bind(table=table, column=column).info("Migrating legacy table")
            with engine.begin() as connection:
                connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))


def get_engine() -> Engine:
    """Return the configured SQLAlchemy engine, creating the schema on first use."""
    global _engine

    if _engine is None:
        with _engine_lock:
            if _engine is None:
                settings = get_database_settings()
                _ensure_sqlite_directory(settings.url)
                options: dict[str, object] = {"echo": settings.echo, "future": True}
                if _is_memory_sqlite(settings.url):
                    # One shared connection keeps the in-memory database alive.
                    options["poolclass"] = StaticPool
                    options["connect_args"] = {"check_same_thread": False}
                engine = create_engine(settings.url, **options)
                if engine.dialect.name == "sqlite":
                    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
                _prepare_schema(engine)
                _engine = engine
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Return a session factory for creating SQLAlchemy sessions."""
    global _session_factory
    engine = get_engine()

    if _session_factory is None:
        with _engine_lock:
            if _session_factory is None:
                _session_factory = sessionmaker(
                    bind=engine,
                    autoflush=False,
                    autocommit=False,
                    expire_on_commit=False,
                    future=True,
                )
    return _session_factory


def create_session() -> Session:
    """Create a new SQLAlchemy session."""
    return get_session_factory()()


def reset_engine() -> None:
    """Dispose of the cached engine so the next call honours fresh settings."""
    global _engine, _session_factory
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _session_factory = None
    get_database_settings.cache_clear()


@contextmanager
def transaction(
    session_factory: sessionmaker[Session] | None = None,
    *,
    conflict_message: str = "Record violates a uniqueness constraint",
) -> Iterator[Session]:
    """Yield a session whose work is committed fully or rolled back fully."""
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(conflict_message, details=str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Database transaction failed", error=str(exc))
        raise PersistenceError("Database operation failed", details=str(exc)) from exc
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
