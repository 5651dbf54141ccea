import logging
import os
import sqlite3
import time
from typing import Callable, Optional, TypeVar

from cinegraph.app.config import settings
from cinegraph.app.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _sqlite_path_from_url(database_url: str) -> str:
    # this should support:
    #   sqlite:///./data/app.db  -> ./data/app.db
    #   sqlite:////abs/path.db   -> /abs/path.db
    if not database_url.startswith("sqlite:"):
        raise ValueError("Only sqlite DATABASE_URL is supported")

    if database_url.startswith("sqlite:///./") or database_url.startswith("sqlite:///../"):
        return database_url.replace("sqlite:///", "", 1)

    if database_url.startswith("sqlite:////"):
        # absolute path
        return database_url.replace("sqlite:////", "/", 1)

    if database_url.startswith("sqlite:///"):
        # treat as absolute (/path...)
        return database_url.replace("sqlite://", "", 1)

    return database_url.replace("sqlite:", "", 1)

def get_db_path() -> str:
    return _sqlite_path_from_url(settings.database_url)

def connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    path = db_path or get_db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn

def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def best_effort_write(
    write: Callable[[], T],
    what: str,
    retries: Optional[int] = None,
    backoff_sec: float = 0.05,
) -> Optional[T]:
    """
    Run a storage write that must never fail the caller.

    sqlite errors are retried at most `retries` times (linear back-off),
    then the write is dropped with a warning and None is returned.
    """
    attempts = 1 + max(0, settings.write_retries if retries is None else retries)

    for attempt in range(1, attempts + 1):
        try:
            return write()
        except sqlite3.Error as e:
            if attempt < attempts:
                logger.debug("write '%s' failed (attempt %d/%d): %s", what, attempt, attempts, e)
                time.sleep(backoff_sec * attempt)
                continue
            logger.warning("dropping write '%s' after %d attempts: %s", what, attempts, e)
    return None
