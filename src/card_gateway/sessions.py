from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, replace


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_session_id() -> str:
    return f"sid_{secrets.token_urlsafe(24)}"


@dataclass(frozen=True)
class Identity:
    """Profile of the person behind a credential, as reported by ``people/me``."""

    email: str | None
    nick_name: str | None
    avatar: str | None

    @classmethod
    def unknown(cls) -> Identity:
        return cls(email=None, nick_name=None, avatar=None)

    @property
    def is_known(self) -> bool:
        return self.email is not None


@dataclass(frozen=True)
class Credential:
    access_token: str
    is_impersonated: bool = False

    def __repr__(self) -> str:
        return f"Credential(access_token='***', is_impersonated={self.is_impersonated})"


@dataclass(frozen=True)
class Session:
    """Server-side record bound to a browser cookie.

    Identity and credential may be absent; such a session is anonymous and
    callers are routed back to the login entry point.
    """

    session_id: str
    identity: Identity | None
    credential: Credential | None
    created_at_ms: int
    expires_at_ms: int

    @property
    def email(self) -> str | None:
        return self.identity.email if self.identity else None

    @property
    def access_token(self) -> str | None:
        return self.credential.access_token if self.credential else None

    @property
    def is_bot(self) -> bool:
        return bool(self.credential and self.credential.is_impersonated)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.email and self.access_token)

    @property
    def has_profile(self) -> bool:
        identity = self.identity
        return bool(self.access_token and identity and identity.avatar and identity.nick_name)


class SessionStore:
    """In-memory session store with a fixed time-to-live."""

    def __init__(self, ttl_ms: int = 8 * 60 * 60 * 1000) -> None:
        self._ttl_ms = ttl_ms
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def create(self, identity: Identity | None, credential: Credential | None) -> Session:
        now_ms = _now_ms()
        session = Session(
            session_id=_new_session_id(),
            identity=identity,
            credential=credential,
            created_at_ms=now_ms,
            expires_at_ms=now_ms + self._ttl_ms,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.expires_at_ms <= _now_ms():
                self._sessions.pop(session_id, None)
                return None
            return session

    def replace(self, session_id: str, identity: Identity, credential: Credential) -> Session | None:
        """Swap identity and credential in one step; ``None`` if the session is gone."""

        with self._lock:
            current = self._sessions.get(session_id)
            if current is None or current.expires_at_ms <= _now_ms():
                self._sessions.pop(session_id, None)
                return None
            updated = replace(current, identity=identity, credential=credential)
            self._sessions[session_id] = updated
            return updated

    def destroy(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None
