from __future__ import annotations

import logging
from typing import Protocol

from .config import GatewayConfig
from .errors import DomainNotAllowed, InvalidBotToken, NoActiveSession
from .ledger import LOGIN, LOGOUT, ActivityRecord, Ledger, record_activity
from .oauth import CredentialExchanger, is_allowed
from .sessions import Credential, Identity, Session

logger = logging.getLogger(__name__)


class SessionBackend(Protocol):
    def create(self, identity: Identity | None, credential: Credential | None) -> Session: ...

    def get(self, session_id: str) -> Session | None: ...

    def replace(self, session_id: str, identity: Identity, credential: Credential) -> Session | None: ...

    def destroy(self, session_id: str) -> bool: ...


class SessionLifecycle:
    """Drives sessions through Anonymous -> Authenticated -> Impersonating -> Destroyed."""

    def __init__(
        self,
        config: GatewayConfig,
        exchanger: CredentialExchanger,
        sessions: SessionBackend,
        ledger: Ledger,
    ) -> None:
        self._config = config
        self._exchanger = exchanger
        self._sessions = sessions
        self._ledger = ledger

    async def login(self, code: str | None, state: str | None) -> Session:
        access_token, identity = await self._exchanger.exchange_code(code, state)

        if not is_allowed(identity.email, self._config.allowed_domains):
            logger.warning("%s attempted to log in from a domain that is not allowed", identity.email)
            record_activity(self._ledger, ActivityRecord(email=identity.email, activity=LOGIN, success=False))
            raise DomainNotAllowed(identity.email)

        session = self._sessions.create(identity, Credential(access_token=access_token))
        record_activity(self._ledger, ActivityRecord(email=identity.email, activity=LOGIN, success=True))
        logger.info("%s logged in", identity.email)
        return session

    async def switch_to_token(self, session: Session | None, token: str) -> Session:
        identity = await self._exchanger.exchange_token(token)
        if not identity.is_known:
            raise InvalidBotToken()
        if self._config.gate_bot_tokens and not is_allowed(identity.email, self._config.allowed_domains):
            logger.warning("%s bot token rejected by the domain allow-list", identity.email)
            raise InvalidBotToken()

        credential = Credential(access_token=token, is_impersonated=True)
        switched = None
        if session is not None:
            switched = self._sessions.replace(session.session_id, identity, credential)
        if switched is None:
            switched = self._sessions.create(identity, credential)

        record_activity(
            self._ledger, ActivityRecord(email=identity.email, activity=LOGIN, success=True, type="bot")
        )
        logger.info("%s switched session to bot identity %s", session.email if session else None, identity.email)
        return switched

    def logout(self, session: Session | None) -> None:
        if session is None:
            raise NoActiveSession()
        outgoing = session.email
        if outgoing is not None:
            record_activity(self._ledger, ActivityRecord(email=outgoing, activity=LOGOUT, success=True))
        self._sessions.destroy(session.session_id)
        logger.info("%s logged out", outgoing)
