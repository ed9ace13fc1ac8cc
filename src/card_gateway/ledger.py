from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Protocol

from .errors import PersistenceError

logger = logging.getLogger(__name__)

LOGIN = "login"
LOGOUT = "logout"
SEND_CARD = "send card"
DELETE_CARD = "delete card"
UPLOAD_IMAGE = "upload image"

ACTIVITIES = frozenset({LOGIN, LOGOUT, SEND_CARD, DELETE_CARD, UPLOAD_IMAGE})

DEFAULT_QUERY_LIMIT = 25
MAX_QUERY_LIMIT = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_timestamp(ts_ms: int) -> str:
    moment = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ActivityRecord:
    """One immutable ledger entry. ``seq`` is assigned by the ledger on append."""

    email: str | None
    activity: str
    success: bool | None = None
    ts_ms: int = 0
    type: str | None = None
    room_id: str | None = None
    room_title: str | None = None
    message_id: str | None = None
    filename: str | None = None
    link: str | None = None
    seq: int = 0

    def __post_init__(self) -> None:
        if self.activity not in ACTIVITIES:
            raise ValueError(f"unknown activity: {self.activity}")

    def to_history(self) -> Dict[str, Any]:
        return {
            "activity": self.activity,
            "timestamp": format_timestamp(self.ts_ms),
            "success": self.success,
            "type": self.type,
        }

    def to_card(self) -> Dict[str, Any]:
        return {
            "activity": self.activity,
            "timestamp": format_timestamp(self.ts_ms),
            "success": self.success,
            "type": self.type,
            "roomId": self.room_id,
            "roomTitle": self.room_title,
            "messageId": self.message_id,
        }

    def to_image(self) -> Dict[str, Any]:
        return {
            "activity": self.activity,
            "timestamp": format_timestamp(self.ts_ms),
            "filename": self.filename,
            "link": self.link,
        }


@dataclass(frozen=True)
class SendStats:
    total_users: int = 0
    total_cards_sent: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"totalUsers": self.total_users, "totalCardsSent": self.total_cards_sent}


class Ledger(Protocol):
    def append(self, record: ActivityRecord) -> ActivityRecord: ...

    def latest_send(self, email: str, message_id: str) -> ActivityRecord | None: ...

    def list_for(
        self, email: str, activity: str | None = None, limit: int = DEFAULT_QUERY_LIMIT
    ) -> List[ActivityRecord]: ...

    def send_stats(self) -> SendStats: ...


class ActivityLedger:
    """In-memory, append-only activity ledger."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[ActivityRecord] = []

    def append(self, record: ActivityRecord) -> ActivityRecord:
        with self._lock:
            stored = replace(record, seq=len(self._records) + 1, ts_ms=record.ts_ms or _now_ms())
            self._records.append(stored)
        return stored

    def latest_send(self, email: str, message_id: str) -> ActivityRecord | None:
        with self._lock:
            for record in reversed(self._records):
                if (
                    record.activity == SEND_CARD
                    and record.success
                    and record.email == email
                    and record.message_id == message_id
                ):
                    return record
        return None

    def list_for(
        self, email: str, activity: str | None = None, limit: int = DEFAULT_QUERY_LIMIT
    ) -> List[ActivityRecord]:
        with self._lock:
            matches = [
                record
                for record in reversed(self._records)
                if record.email == email and (activity is None or record.activity == activity)
            ]
        return matches[: max(limit, 0)]

    def send_stats(self) -> SendStats:
        per_user: Dict[str, int] = {}
        with self._lock:
            for record in self._records:
                if record.activity == SEND_CARD and record.success:
                    if record.email is None:
                        continue
                    per_user[record.email] = per_user.get(record.email, 0) + 1
        return SendStats(total_users=len(per_user), total_cards_sent=sum(per_user.values()))


def record_activity(ledger: Ledger, record: ActivityRecord) -> ActivityRecord | None:
    """Append an audit-only record; a store failure is logged and never raised."""

    try:
        return ledger.append(record)
    except PersistenceError as exc:
        logger.error("%s: failed to record %r activity: %s", record.email, record.activity, exc.message)
        return None
