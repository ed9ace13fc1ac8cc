from __future__ import annotations

import sqlite3
import threading
from pathlib import Path


class SQLiteBackend:
    """Owns a shared SQLite connection and applies gateway migrations."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
        elif user_version != self.SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                email TEXT,
                nick_name TEXT,
                avatar TEXT,
                access_token TEXT,
                is_bot INTEGER NOT NULL DEFAULT 0,
                created_at_ms INTEGER NOT NULL,
                expires_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS activity (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT,
                activity TEXT NOT NULL,
                success INTEGER,
                ts_ms INTEGER NOT NULL,
                type TEXT,
                room_id TEXT,
                room_title TEXT,
                message_id TEXT,
                filename TEXT,
                link TEXT
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS activity_email_seq ON activity (email, seq)")
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS activity_message ON activity (email, message_id, activity)"
        )
