"""Error taxonomy shared by the gateway components."""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class; ``message`` is safe to show to the end user."""

    default_message = "An error occurred."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ProtocolError(GatewayError):
    default_message = "Something went wrong with the OAuth flow."


class MissingCode(ProtocolError):
    default_message = "Authorization code missing. Something went wrong with the OAuth flow."


class StateMismatch(ProtocolError):
    default_message = "State string has been tampered with. Something went wrong with the OAuth flow."


class DomainNotAllowed(ProtocolError):
    default_message = "Your email domain is not allowed to use this application."

    def __init__(self, email: str | None) -> None:
        super().__init__()
        self.email = email


class UpstreamError(GatewayError):
    """A call to the external API failed at the transport or HTTP level.

    ``status`` is ``None`` for transport failures (connection refused, timeout).
    ``body`` holds the decoded upstream payload when one was returned.
    """

    def __init__(self, operation: str, status: int | None = None, body: Any = None, reason: str | None = None) -> None:
        self.operation = operation
        self.status = status
        self.body = body
        super().__init__(self._describe(reason))

    def _describe(self, reason: str | None) -> str:
        if isinstance(self.body, dict) and isinstance(self.body.get("message"), str):
            return self.body["message"]
        if self.status is not None:
            return f"{self.operation} failed with status {self.status}"
        return f"{self.operation} failed: {reason or 'no response'}"


class PersistenceError(GatewayError):
    default_message = "The data store is unavailable."


class AuthorizationError(GatewayError):
    default_message = "You are not authenticated."


class NotAuthenticated(AuthorizationError):
    pass


class NoActiveSession(AuthorizationError):
    default_message = "No session to log out."


class InvalidBotToken(AuthorizationError):
    default_message = "Invalid bot token."
