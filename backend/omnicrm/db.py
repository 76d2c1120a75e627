from __future__ import annotations

import sqlite3
from collections.abc import Generator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from omnicrm.config import get_settings


@event.listens_for(Engine, "connect")
def _set_sqlite_pragmas(dbapi_connection, connection_record):
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    get_settings().db_url,
    echo=False,
    connect_args=_connect_args(get_settings().db_url),
)


def create_db_and_tables(eng=None) -> None:
    eng = eng if eng is not None else engine
    SQLModel.metadata.create_all(eng)
    _run_migrations(eng)


def _run_migrations(eng) -> None:
    """Lightweight forward-only migrations for schema additions."""
    from sqlalchemy import inspect, text

    insp = inspect(eng)
    job_cols = [c["name"] for c in insp.get_columns("jobs")]
    for col_name, col_def in [
        ("next_eligible_at", "TIMESTAMP"),
        ("claimed_at", "TIMESTAMP"),
        ("last_error_traceback", "TEXT"),
    ]:
        if col_name not in job_cols:
            with eng.begin() as conn:
                conn.execute(text(f"ALTER TABLE jobs ADD COLUMN {col_name} {col_def}"))

    embedding_cols = [c["name"] for c in insp.get_columns("embeddings")]
    if "mirrored_at" not in embedding_cols:
        with eng.begin() as conn:
            conn.execute(text("ALTER TABLE embeddings ADD COLUMN mirrored_at TIMESTAMP"))


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
