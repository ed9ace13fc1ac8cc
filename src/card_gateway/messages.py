from __future__ import annotations

import logging
from typing import Any

from .errors import PersistenceError, UpstreamError
from .ledger import DELETE_CARD, SEND_CARD, ActivityRecord, Ledger, record_activity
from .sessions import Session
from .webex import WebexClient

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "Card could not render"


class MessageProxy:
    """Sends and deletes card messages on the session's behalf, keeping the ledger in step."""

    def __init__(self, client: WebexClient, ledger: Ledger, fallback_text: str = FALLBACK_TEXT) -> None:
        self._client = client
        self._ledger = ledger
        self._fallback_text = fallback_text

    async def send_card(
        self,
        session: Session,
        room_id: str,
        room_title: str | None,
        card: Any,
        card_type: str | None = None,
    ) -> dict:
        """Post ``card`` to ``room_id`` and return the upstream message payload.

        The ``send card`` record is written before this returns, so a later
        delete of the same message always finds it.
        """

        email = session.email
        try:
            payload = await self._client.create_message(session.access_token, room_id, card, self._fallback_text)
        except UpstreamError as exc:
            logger.error("%s: card send to %s failed: %s", email, room_id, exc.message)
            record_activity(
                self._ledger,
                ActivityRecord(
                    email=email,
                    activity=SEND_CARD,
                    success=False,
                    type=card_type,
                    room_id=room_id,
                    room_title=room_title,
                ),
            )
            raise

        message_id = payload.get("id") if isinstance(payload, dict) else None
        if not message_id:
            logger.warning("%s: card sent to %s but the response carried no message id", email, room_id)
        record_activity(
            self._ledger,
            ActivityRecord(
                email=email,
                activity=SEND_CARD,
                success=True,
                type=card_type,
                room_id=room_id,
                room_title=room_title,
                message_id=message_id or None,
            ),
        )
        logger.info("%s: sent %s card to %s", email, card_type, room_id)
        return payload

    async def delete_card(self, session: Session, message_id: str) -> None:
        """Delete a message; only the upstream call decides success.

        Room metadata for the audit entry comes from the matching ``send card``
        record and falls back to ``None`` when it cannot be recovered.
        """

        email = session.email
        failure: UpstreamError | None = None
        try:
            await self._client.delete_message(session.access_token, message_id)
        except UpstreamError as exc:
            logger.error("%s: delete of message %s failed: %s", email, message_id, exc.message)
            failure = exc

        room_id = room_title = card_type = None
        try:
            sent = self._ledger.latest_send(email, message_id) if email else None
        except PersistenceError as exc:
            logger.error("%s: could not look up send record for %s: %s", email, message_id, exc.message)
            sent = None
        if sent is not None:
            room_id, room_title, card_type = sent.room_id, sent.room_title, sent.type
        else:
            logger.warning("%s: no send record found for message %s", email, message_id)

        record_activity(
            self._ledger,
            ActivityRecord(
                email=email,
                activity=DELETE_CARD,
                success=failure is None,
                type=card_type,
                room_id=room_id,
                room_title=room_title,
                message_id=message_id,
            ),
        )
        if failure is not None:
            raise failure
        logger.info("%s: deleted message %s from %s", email, message_id, room_id)
