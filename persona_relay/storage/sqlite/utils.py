from __future__ import annotations

import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from ...errors import StorageError

# Millisecond resolution; ties are broken by the autoincrement id.
SQLITE_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


@asynccontextmanager
async def _sqlite_connection(db_path: str | Path, busy_timeout_ms: int = 5000) -> AsyncIterator[aiosqlite.Connection]:
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA foreign_keys=ON")
            timeout_ms = max(0, min(int(busy_timeout_ms), 60000))
            if timeout_ms > 0:
                await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
            db.row_factory = aiosqlite.Row
            yield db
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"SQLite storage failed: {exc}") from exc
