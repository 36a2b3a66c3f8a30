"""Engine and session factory wiring for the import database."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from persistence.models import Base

DEFAULT_DB_FILENAME = "imports.db"
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "data" / DEFAULT_DB_FILENAME
DB_URL_ENV_VAR = "IMPORT_DB_URL"

_engine: Engine | None = None


def get_database_url() -> str:
    """`IMPORT_DB_URL` when set, else a SQLite file beside the service sources."""
    return os.getenv(DB_URL_ENV_VAR) or f"sqlite:///{DEFAULT_DB_PATH}"


def _is_memory_database(url: URL) -> bool:
    return not url.database or url.database == ":memory:"


def _ensure_sqlite_directory(url: URL) -> None:
    if _is_memory_database(url):
        return
    db_path = Path(url.database)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    db_path.resolve().parent.mkdir(parents=True, exist_ok=True)


def create_engine_for_url(database_url: str) -> Engine:
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return create_engine(database_url, future=True)

    _ensure_sqlite_directory(url)
    # The pipeline writes from a background task while requests read from worker threads.
    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if _is_memory_database(url):
        # One shared connection, otherwise every session sees an empty database.
        options["poolclass"] = StaticPool
    return create_engine(database_url, future=True, **options)


def get_engine() -> Engine:
    """Process-wide engine, built on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(get_database_url())
    return _engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Records outlive their session: the pipeline hands them across awaits.
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )


SessionLocal = build_session_factory(get_engine())


def init_db(engine: Engine | None = None) -> None:
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine or get_engine())
