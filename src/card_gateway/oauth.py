from __future__ import annotations

import logging
from typing import Iterable
from urllib.parse import urlencode

from .config import GatewayConfig
from .errors import MissingCode, StateMismatch, UpstreamError
from .sessions import Identity
from .webex import WebexClient

logger = logging.getLogger(__name__)

SCOPES = "spark:messages_write spark:people_read spark:rooms_read"


def authorize_url(config: GatewayConfig) -> str:
    query = urlencode(
        {
            "client_id": config.client_id,
            "response_type": "code",
            "redirect_uri": config.redirect_uri,
            "scope": SCOPES,
            "state": config.state_string,
        }
    )
    return f"{config.api_base}/authorize?{query}"


def is_allowed(email: str | None, allow_list: Iterable[str]) -> bool:
    """True iff the email's domain is an allow-listed domain or a subdomain of one.

    Matching is case-sensitive. ``evilx.com`` does not match ``x.com``.
    """

    if not email:
        return False
    _, sep, domain = email.rpartition("@")
    if not sep or not domain:
        return False
    for entry in allow_list:
        allowed = entry.lstrip("@.")
        if not allowed:
            continue
        if domain == allowed or domain.endswith("." + allowed):
            return True
    return False


def identity_from_profile(profile: dict) -> Identity:
    emails = profile.get("emails") or []
    return Identity(
        email=emails[0] if emails else None,
        nick_name=profile.get("nickName"),
        avatar=profile.get("avatar"),
    )


class CredentialExchanger:
    """Turns an authorization code (or a raw token) into a credential and identity."""

    def __init__(self, config: GatewayConfig, client: WebexClient) -> None:
        self._config = config
        self._client = client

    async def exchange_code(self, code: str | None, state: str | None) -> tuple[str, Identity]:
        if not code:
            logger.error("No authorization code provided in the query string.")
            raise MissingCode()
        if state != self._config.state_string:
            logger.error("State string has been tampered with.")
            raise StateMismatch()

        try:
            token_payload = await self._client.exchange_code(
                client_id=self._config.client_id,
                client_secret=self._config.client_secret,
                code=code,
                redirect_uri=self._config.redirect_uri,
            )
        except UpstreamError as exc:
            logger.error("Error exchanging code for access token: %s", exc.message)
            raise
        access_token = token_payload.get("access_token") if isinstance(token_payload, dict) else None
        if not access_token:
            logger.error("Token exchange response carried no access token.")
            raise UpstreamError("token exchange", reason="response carried no access token")

        try:
            profile = await self._client.get_me(access_token)
        except UpstreamError as exc:
            logger.error("Error fetching user profile: %s", exc.message)
            raise
        return access_token, identity_from_profile(profile)

    async def exchange_token(self, token: str) -> Identity:
        """Resolve a caller-supplied token; an unusable token yields ``Identity.unknown()``."""

        try:
            profile = await self._client.get_me(token)
        except UpstreamError as exc:
            logger.info("Supplied token was rejected by %s (status %s).", exc.operation, exc.status)
            return Identity.unknown()
        return identity_from_profile(profile)
