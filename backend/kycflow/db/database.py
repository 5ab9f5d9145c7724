"""Database setup: SQLite with WAL mode via SQLModel/SQLAlchemy.

Tables:
- run_checkpoint: one row per paused run; the payload column holds the full RunCheckpoint JSON
- approval_token_index: approval token -> run_id, for stage-1 and EDD tokens
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from kycflow.config import settings

_SQLITE_PREFIX = "sqlite:///"

# WAL lets status polls read while a decision is being written
_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def get_database_url() -> str:
    """Configured URL; for SQLite files the parent directory is created."""
    url = settings.database_url
    if url.startswith(_SQLITE_PREFIX):
        parent = Path(url[len(_SQLITE_PREFIX):]).parent
        if str(parent) not in ("", "."):
            parent.mkdir(parents=True, exist_ok=True)
    return url


@event.listens_for(Engine, "connect")
def set_sqlite_wal(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    for pragma in _SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def make_engine(url: str) -> Engine:
    """Engine for `url`. Tests point this at a tmp_path file."""
    # check_same_thread=False: FastAPI serves requests from a thread pool
    return create_engine(url, echo=False, connect_args={"check_same_thread": False})


engine = make_engine(get_database_url())


def create_db_and_tables(bind: Engine | None = None):
    """Create the checkpoint tables on `bind` (default: the app engine)."""
    import kycflow.models.checkpoint  # noqa: F401  registers the table models

    SQLModel.metadata.create_all(bind or engine)
