from __future__ import annotations

import base64
import hashlib
import hmac

COOKIE_NAME = "card-gateway-session"


def sign_session_id(secret: str, session_id: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), session_id.encode("utf-8"), hashlib.sha256).digest()
    signature = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return f"{session_id}.{signature}"


def unsign_cookie(secret: str, value: str | None) -> str | None:
    """Return the session id from a signed cookie value, or ``None`` if it was tampered with."""

    if not value:
        return None
    session_id, sep, _ = value.rpartition(".")
    if not sep or not session_id:
        return None
    if not hmac.compare_digest(sign_session_id(secret, session_id), value):
        return None
    return session_id
