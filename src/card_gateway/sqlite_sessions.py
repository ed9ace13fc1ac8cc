from __future__ import annotations

import sqlite3

from .errors import PersistenceError
from .sessions import Credential, Identity, Session, _new_session_id, _now_ms
from .sqlite_backend import SQLiteBackend

_COLUMNS = "session_id, email, nick_name, avatar, access_token, is_bot, created_at_ms, expires_at_ms"


def _row_to_session(row: sqlite3.Row) -> Session:
    identity = None
    if row[1] is not None or row[2] is not None or row[3] is not None:
        identity = Identity(email=row[1], nick_name=row[2], avatar=row[3])
    credential = None
    if row[4] is not None:
        credential = Credential(access_token=row[4], is_impersonated=bool(row[5]))
    return Session(
        session_id=row[0],
        identity=identity,
        credential=credential,
        created_at_ms=row[6],
        expires_at_ms=row[7],
    )


class SQLiteSessionStore:
    """Durable session store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, ttl_ms: int = 8 * 60 * 60 * 1000) -> None:
        self._backend = backend
        self._ttl_ms = ttl_ms

    def create(self, identity: Identity | None, credential: Credential | None) -> Session:
        now_ms = _now_ms()
        session = Session(
            session_id=_new_session_id(),
            identity=identity,
            credential=credential,
            created_at_ms=now_ms,
            expires_at_ms=now_ms + self._ttl_ms,
        )
        try:
            with self._backend.lock:
                self._backend.connection.execute(
                    f"INSERT INTO sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        session.session_id,
                        session.email,
                        identity.nick_name if identity else None,
                        identity.avatar if identity else None,
                        session.access_token,
                        int(session.is_bot),
                        session.created_at_ms,
                        session.expires_at_ms,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"session insert failed: {exc}") from exc
        return session

    def get(self, session_id: str) -> Session | None:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    f"SELECT {_COLUMNS} FROM sessions WHERE session_id=?",
                    (session_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"session read failed: {exc}") from exc
        if row is None:
            return None
        session = _row_to_session(row)
        if session.expires_at_ms <= _now_ms():
            self.destroy(session_id)
            return None
        return session

    def replace(self, session_id: str, identity: Identity, credential: Credential) -> Session | None:
        """Swap identity and credential in a single UPDATE; ``None`` if the session is gone."""

        try:
            with self._backend.lock:
                cursor = self._backend.connection.execute(
                    """
                    UPDATE sessions
                    SET email=?, nick_name=?, avatar=?, access_token=?, is_bot=?
                    WHERE session_id=? AND expires_at_ms > ?
                    """,
                    (
                        identity.email,
                        identity.nick_name,
                        identity.avatar,
                        credential.access_token,
                        int(credential.is_impersonated),
                        session_id,
                        _now_ms(),
                    ),
                )
                updated = cursor.rowcount
        except sqlite3.Error as exc:
            raise PersistenceError(f"session update failed: {exc}") from exc
        if not updated:
            return None
        return self.get(session_id)

    def destroy(self, session_id: str) -> bool:
        try:
            with self._backend.lock:
                cursor = self._backend.connection.execute(
                    "DELETE FROM sessions WHERE session_id=?",
                    (session_id,),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise PersistenceError(f"session delete failed: {exc}") from exc
