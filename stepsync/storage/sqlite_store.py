"""
SQLite storage for exported conversation sessions.

Stores the memory export record as-is: one row per session, messages and
metadata as JSON columns. Single portable file. Export back to the same
record shape ConversationMemory.import_session() accepts.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from stepsync.config import get_section

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    start_time TEXT NOT NULL,
    last_activity_time TEXT NOT NULL,
    message_count INTEGER DEFAULT 0,
    messages TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_sessions_activity
    ON sessions(last_activity_time);
"""


class SQLiteStore:
    """Thread-safe SQLite session store (one connection per operation)."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @classmethod
    def from_config(cls) -> "SQLiteStore | None":
        """Create the store if storage is enabled in config.yaml, else None."""
        s_cfg = get_section("storage")
        if not s_cfg.get("enabled", False):
            return None
        return cls(s_cfg.get("sqlite_path", "./data/sessions.db"))

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def save_session(self, record: dict):
        """Insert or replace one export record."""
        messages = record.get("messages", [])
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO sessions
                   (id, start_time, last_activity_time, message_count, messages, metadata)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    record["id"],
                    record["startTime"],
                    record["lastActivityTime"],
                    len(messages),
                    json.dumps(messages),
                    json.dumps(record.get("metadata") or {}),
                ),
            )
        logger.debug("Saved session %s (%d messages)", record["id"][:16], len(messages))

    def load_session(self, session_id: str) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        return {
            "id": row["id"],
            "startTime": row["start_time"],
            "lastActivityTime": row["last_activity_time"],
            "messages": json.loads(row["messages"]),
            "metadata": json.loads(row["metadata"]),
        }

    def list_sessions(self, limit: int = 50) -> list[dict]:
        """Most recently active first. Summaries only, no message bodies."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT id, start_time, last_activity_time, message_count
                   FROM sessions ORDER BY last_activity_time DESC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cur.rowcount > 0

    def get_stats(self) -> dict:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS sessions, COALESCE(SUM(message_count), 0) AS messages FROM sessions"
            ).fetchone()
        return {"sessions": row["sessions"], "messages": row["messages"]}
