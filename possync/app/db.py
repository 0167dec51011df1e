import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

# Schema changes are additive and versioned through PRAGMA user_version.
# Never edit an applied step; append a new one.
MIGRATIONS = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS orders (
          frontend_id TEXT PRIMARY KEY,
          server_id INTEGER,
          status TEXT NOT NULL,
          sync_status TEXT NOT NULL,
          data_json TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          last_sync_attempt TEXT,
          sync_error TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_orders_server_id ON orders (server_id)",
        "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status)",
        "CREATE INDEX IF NOT EXISTS idx_orders_sync_status ON orders (sync_status)",
        "CREATE INDEX IF NOT EXISTS idx_orders_updated_at ON orders (updated_at)",
        """
        CREATE TABLE IF NOT EXISTS sync_queue (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          frontend_id TEXT NOT NULL,
          created_at TEXT NOT NULL,
          retry_count INTEGER NOT NULL DEFAULT 0,
          next_retry_at TEXT NOT NULL,
          last_error TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_sync_queue_frontend_id ON sync_queue (frontend_id)",
        "CREATE INDEX IF NOT EXISTS idx_sync_queue_next_retry_at ON sync_queue (next_retry_at)",
    ],
    # Listings sort by creation time so rows do not jump around when edited.
    2: [
        "CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders (created_at)",
        "DROP INDEX IF EXISTS idx_orders_updated_at",
    ],
    3: [
        "ALTER TABLE orders ADD COLUMN revision INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE orders ADD COLUMN pending_facets TEXT NOT NULL DEFAULT '[]'",
    ],
    4: [
        "DELETE FROM sync_queue WHERE id NOT IN (SELECT MAX(id) FROM sync_queue GROUP BY frontend_id)",
        "DROP INDEX IF EXISTS idx_sync_queue_frontend_id",
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_frontend_id ON sync_queue (frontend_id)",
    ],
}

SCHEMA_VERSION = max(MIGRATIONS)


def connect(db_path: str) -> sqlite3.Connection:
    # All access happens on the event loop thread, which need not be the opening thread.
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0] if row else 0)


def migrate(conn: sqlite3.Connection, target: int = SCHEMA_VERSION) -> int:
    current = schema_version(conn)
    for version in sorted(MIGRATIONS):
        if version <= current or version > target:
            continue
        with conn:
            for stmt in MIGRATIONS[version]:
                conn.execute(stmt)
            # PRAGMA does not accept bound parameters.
            conn.execute(f"PRAGMA user_version = {int(version)}")
        current = version
    return current


def open_database(db_path: str) -> sqlite3.Connection:
    conn = connect(db_path)
    migrate(conn)
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection):
    # commit on success, rollback on exception
    with conn:
        yield conn.cursor()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_ts(value: Optional[datetime]) -> Optional[str]:
    # Stored as fixed-width UTC ISO strings so text comparison matches time order.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
