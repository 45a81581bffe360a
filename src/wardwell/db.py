"""SQLite connections for the derived stores (index.db, sessions.db)."""

from __future__ import annotations

import contextlib
import logging
import os
import sqlite3
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger("wardwell.db")


def connect(db_path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open a local SQLite file with WAL mode.

    A 0-byte file (left behind by a crash before the first page was written)
    is derived state with nothing in it, so it is removed and recreated.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    if db_path.exists() and db_path.stat().st_size == 0:
        logger.warning("removing empty database file: %s", db_path)
        remove_db(db_path)
    conn = sqlite3.connect(str(db_path), timeout=5.0, check_same_thread=check_same_thread)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
    except sqlite3.OperationalError as exc:
        conn.close()
        msg = (
            f"Failed to open DB {db_path}, it may be corrupt.\n"
            f"Fix: stop the daemon, rm {db_path}* and restart (it is rebuilt from the vault).\n"
            f"Original error: {exc}"
        )
        raise sqlite3.OperationalError(msg) from exc
    return conn


def remove_db(db_path: Path) -> None:
    """Delete a database file together with its WAL and shared-memory siblings."""
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            db_path.with_name(db_path.name + suffix).unlink()


class ReopeningConnection:
    """A shared connection that is reopened, schema and all, when its file is deleted or replaced.

    Derived stores may be removed by the user at any time; the next access
    starts again from an empty database instead of writing to an unlinked inode.
    """

    def __init__(self, db_path: Path, ensure_schema: Callable[[sqlite3.Connection], None]) -> None:
        self.db_path = db_path
        self._ensure_schema = ensure_schema
        self._conn: sqlite3.Connection | None = None
        self._inode: int | None = None

    def get(self) -> sqlite3.Connection:
        try:
            inode: int | None = os.stat(self.db_path).st_ino
        except FileNotFoundError:
            inode = None
        if self._conn is not None and inode == self._inode:
            return self._conn
        if self._conn is not None:
            logger.warning("database missing or replaced, reopening empty: %s", self.db_path)
            self._conn.close()
        self._conn = connect(self.db_path, check_same_thread=False)
        self._ensure_schema(self._conn)
        self._inode = os.stat(self.db_path).st_ino
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._inode = None
