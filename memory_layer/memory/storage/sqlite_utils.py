"""Connection helpers for the SQLite-backed stores."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from memory_layer.core.exceptions import PersistenceError


def is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(exc)


@contextmanager
def connect(path: Path) -> Iterator[sqlite3.Connection]:
    """Yield a connection that commits on success and rolls back on error.

    A UNIQUE constraint violation passes through as ``sqlite3.IntegrityError``
    so callers can map it to ``DuplicateError``; every other database error,
    including other constraint failures, becomes ``PersistenceError``.
    """
    try:
        conn = sqlite3.connect(path)
    except sqlite3.Error as exc:
        raise PersistenceError(f"Could not open database {path}: {exc}") from exc
    try:
        with conn:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
    except sqlite3.IntegrityError as exc:
        if is_unique_violation(exc):
            raise
        raise PersistenceError(f"Database constraint failed on {path}: {exc}") from exc
    except sqlite3.Error as exc:
        raise PersistenceError(f"Database operation failed on {path}: {exc}") from exc
    finally:
        conn.close()
