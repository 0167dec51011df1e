import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .db import to_db_ts, transaction, utcnow
from .models import RetryQueueEntry

# Delay before the next attempt, indexed by retry_count and capped at the last step.
BACKOFF_SECONDS = (30, 60, 120, 300, 600)

_ENTRY_COLUMNS = "id, frontend_id, created_at, retry_count, next_retry_at, last_error"


def next_retry_at(retry_count: int, now: Optional[datetime] = None) -> datetime:
    idx = min(max(int(retry_count), 0), len(BACKOFF_SECONDS) - 1)
    return (now or utcnow()) + timedelta(seconds=BACKOFF_SECONDS[idx])


def _row_to_entry(row) -> RetryQueueEntry:
    return RetryQueueEntry(
        id=row["id"],
        frontend_id=row["frontend_id"],
        created_at=row["created_at"],
        retry_count=row["retry_count"],
        next_retry_at=row["next_retry_at"],
        last_error=row["last_error"],
    )


class RetryQueue:
    """Persistent record of orders whose last push failed, with capped backoff."""

    def __init__(self, conn: sqlite3.Connection, clock: Optional[Callable[[], datetime]] = None):
        self.conn = conn
        self.clock = clock or utcnow

    async def enqueue(self, frontend_id: str, error: Optional[str], now: Optional[datetime] = None) -> RetryQueueEntry:
        now = now or self.clock()
        with transaction(self.conn) as cur:
            cur.execute("SELECT retry_count FROM sync_queue WHERE frontend_id = ?", (frontend_id,))
            row = cur.fetchone()
            if row:
                retry_count = int(row["retry_count"]) + 1
                cur.execute(
                    """
                    UPDATE sync_queue
                    SET retry_count = ?, next_retry_at = ?, last_error = ?
                    WHERE frontend_id = ?
                    """,
                    (retry_count, to_db_ts(next_retry_at(retry_count, now)), error, frontend_id),
                )
            else:
                cur.execute(
                    """
                    INSERT INTO sync_queue (frontend_id, created_at, retry_count, next_retry_at, last_error)
                    VALUES (?, ?, 0, ?, ?)
                    """,
                    (frontend_id, to_db_ts(now), to_db_ts(next_retry_at(0, now)), error),
                )
        return await self.get(frontend_id)

    async def dequeue(self, frontend_id: str) -> bool:
        with transaction(self.conn) as cur:
            cur.execute("DELETE FROM sync_queue WHERE frontend_id = ?", (frontend_id,))
            return cur.rowcount > 0

    async def due(self, now: Optional[datetime] = None) -> List[RetryQueueEntry]:
        now = now or self.clock()
        rows = self.conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM sync_queue WHERE next_retry_at <= ? ORDER BY next_retry_at ASC, id ASC",
            (to_db_ts(now),),
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    async def get(self, frontend_id: str) -> Optional[RetryQueueEntry]:
        row = self.conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM sync_queue WHERE frontend_id = ?",
            (frontend_id,),
        ).fetchone()
        return _row_to_entry(row) if row else None

    async def entries(self) -> List[RetryQueueEntry]:
        rows = self.conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM sync_queue ORDER BY next_retry_at ASC, id ASC"
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    async def count(self) -> int:
        row = self.conn.execute("SELECT COUNT(1) AS n FROM sync_queue").fetchone()
        return int(row["n"])

    async def clear(self) -> int:
        with transaction(self.conn) as cur:
            cur.execute("DELETE FROM sync_queue")
            return cur.rowcount
