from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from crmseed.core.config import get_settings

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None

# Workers claim jobs from several threads against one SQLite file.
_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA foreign_keys=ON;",
)


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def build_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    if _is_sqlite(database_url):
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    if _is_sqlite(database_url):

        @event.listens_for(engine, "connect")
        def _apply_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            for pragma in _SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.close()

    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().effective_database_url)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False, class_=Session)
    return _session_factory


def reset_engine() -> None:
    """Dispose the cached engine so the next call rebuilds it from fresh settings."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
