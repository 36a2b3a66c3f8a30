"""Persistence primitives for the statement import service."""

from persistence.database import (
    DB_URL_ENV_VAR,
    DEFAULT_DB_FILENAME,
    DEFAULT_DB_PATH,
    SessionLocal,
    build_session_factory,
    create_engine_for_url,
    get_database_url,
    get_engine,
    init_db,
)
from persistence.models import Base, Expense, ImportRow, ImportSession
from persistence.repository import ConfirmScope, ImportRepository, RowStatus, SessionStatus

__all__ = [
    "Base",
    "ConfirmScope",
    "DB_URL_ENV_VAR",
    "DEFAULT_DB_FILENAME",
    "DEFAULT_DB_PATH",
    "Expense",
    "ImportRepository",
    "ImportRow",
    "ImportSession",
    "RowStatus",
    "SessionLocal",
    "SessionStatus",
    "build_session_factory",
    "create_engine_for_url",
    "get_database_url",
    "get_engine",
    "init_db",
]
