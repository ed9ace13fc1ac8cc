from __future__ import annotations

import sqlite3
import time

from .errors import PersistenceError
from .ledger import DEFAULT_QUERY_LIMIT, SEND_CARD, ActivityRecord, SendStats
from .sqlite_backend import SQLiteBackend

_COLUMNS = "seq, email, activity, success, ts_ms, type, room_id, room_title, message_id, filename, link"


def _row_to_record(row: sqlite3.Row) -> ActivityRecord:
    try:
        return ActivityRecord(
            seq=row[0],
            email=row[1],
            activity=row[2],
            success=None if row[3] is None else bool(row[3]),
            ts_ms=row[4],
            type=row[5],
            room_id=row[6],
            room_title=row[7],
            message_id=row[8],
            filename=row[9],
            link=row[10],
        )
    except ValueError as exc:
        raise PersistenceError(f"activity row {row[0]} is unreadable: {exc}") from exc


class SQLiteActivityLedger:
    """Durable activity ledger backed by SQLite; rows are never updated."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def append(self, record: ActivityRecord) -> ActivityRecord:
        ts_ms = record.ts_ms or int(time.time() * 1000)
        try:
            with self._backend.lock:
                cursor = self._backend.connection.execute(
                    """
                    INSERT INTO activity (email, activity, success, ts_ms, type, room_id, room_title,
                                          message_id, filename, link)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.email,
                        record.activity,
                        None if record.success is None else int(record.success),
                        ts_ms,
                        record.type,
                        record.room_id,
                        record.room_title,
                        record.message_id,
                        record.filename,
                        record.link,
                    ),
                )
                seq = cursor.lastrowid
        except sqlite3.Error as exc:
            raise PersistenceError(f"activity insert failed: {exc}") from exc
        return ActivityRecord(
            email=record.email,
            activity=record.activity,
            success=record.success,
            ts_ms=ts_ms,
            type=record.type,
            room_id=record.room_id,
            room_title=record.room_title,
            message_id=record.message_id,
            filename=record.filename,
            link=record.link,
            seq=seq,
        )

    def latest_send(self, email: str, message_id: str) -> ActivityRecord | None:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    f"""
                    SELECT {_COLUMNS} FROM activity
                    WHERE email=? AND message_id=? AND activity=? AND success=1
                    ORDER BY seq DESC LIMIT 1
                    """,
                    (email, message_id, SEND_CARD),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"activity lookup failed: {exc}") from exc
        return _row_to_record(row) if row else None

    def list_for(
        self, email: str, activity: str | None = None, limit: int = DEFAULT_QUERY_LIMIT
    ) -> list[ActivityRecord]:
        query = f"SELECT {_COLUMNS} FROM activity WHERE email=?"
        params: list[object] = [email]
        if activity is not None:
            query += " AND activity=?"
            params.append(activity)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(max(limit, 0))
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(query, params).fetchall()
        except (sqlite3.Error, OverflowError) as exc:
            raise PersistenceError(f"activity query failed: {exc}") from exc
        return [_row_to_record(row) for row in rows]

    def send_stats(self) -> SendStats:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    """
                    SELECT COUNT(DISTINCT email), COUNT(*) FROM activity
                    WHERE activity=? AND success=1 AND email IS NOT NULL
                    """,
                    (SEND_CARD,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"activity aggregate failed: {exc}") from exc
        return SendStats(total_users=int(row[0] or 0), total_cards_sent=int(row[1] or 0))
