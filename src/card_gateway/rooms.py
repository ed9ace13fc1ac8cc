from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from .errors import UpstreamError
from .sessions import Credential
from .webex import WebexClient

logger = logging.getLogger(__name__)

DEFAULT_ROOM_LIMIT = 500
MAX_ROOM_LIMIT = 1000
ATTEMPTS = 2


@dataclass(frozen=True)
class Room:
    id: str
    title: str | None
    type: str | None

    @classmethod
    def from_payload(cls, item: dict) -> Room:
        return cls(id=item.get("id"), title=item.get("title"), type=item.get("type"))

    def to_dict(self) -> dict:
        return asdict(self)


class RoomLister:
    """Lists the caller's spaces, most recently active first."""

    def __init__(self, client: WebexClient, default_limit: int = DEFAULT_ROOM_LIMIT) -> None:
        self._client = client
        self._default_limit = default_limit

    async def list_rooms(self, credential: Credential, limit: int | None = None, *, email: str | None = None) -> list[Room]:
        """Return at most ``limit`` rooms.

        A failed call is retried once, immediately. When the retry fails too
        the result is an empty list, indistinguishable from having no rooms.
        """

        if limit is None or limit < 1:
            limit = self._default_limit
        for attempt in range(1, ATTEMPTS + 1):
            try:
                items = await self._client.list_rooms(credential.access_token, limit)
            except UpstreamError as exc:
                logger.warning("%s: room listing attempt %d failed: %s", email, attempt, exc.message)
                continue
            return [Room.from_payload(item) for item in items[:limit] if isinstance(item, dict)]
        logger.error("%s: room listing gave up after %d attempts", email, ATTEMPTS)
        return []
