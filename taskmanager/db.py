"""Async SQLite connection helper over aiosqlite.

Every store opens a short-lived connection per operation.  The database file
is taken from ``settings.database_path`` unless a path is passed explicitly
(test isolation, or a second database for audit records).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite

from taskmanager.config import settings

if TYPE_CHECKING:
    from pathlib import Path


async def get_connection(path: Path | None = None) -> aiosqlite.Connection:
    """Open an aiosqlite connection with WAL mode and a busy timeout.

    The parent directory is created on demand.  Failures to create it or to
    open the file propagate to the caller.
    """
    db_path = path or settings.database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(db_path))
    try:
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout=5000")
    except Exception:
        await conn.close()
        raise
    return conn
