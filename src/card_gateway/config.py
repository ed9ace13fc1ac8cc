from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

DEFAULT_API_BASE = "https://webexapis.com/v1"
DEFAULT_FRONTEND_URL = "http://localhost:3000"
DEFAULT_SESSION_TTL_S = 8 * 60 * 60

logger = logging.getLogger(__name__)

_REQUIRED = ("CLIENT_ID", "CLIENT_SECRET", "REDIRECT_URI", "STATE_STRING", "COOKIE_SECRET")


@dataclass(frozen=True)
class GatewayConfig:
    """Process-wide settings, built once and handed to each component."""

    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str
    state_string: str = field(repr=False)
    cookie_secret: str = field(repr=False)
    allowed_domains: tuple[str, ...] = ()
    frontend_url: str = DEFAULT_FRONTEND_URL
    session_ttl_s: int = DEFAULT_SESSION_TTL_S
    api_base: str = DEFAULT_API_BASE
    http_timeout_s: int = 10
    gate_bot_tokens: bool = False
    environment: str = "production"
    log_file: str = "logs/app.log"
    db_path: str | None = None

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_s * 1000

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def parse_domains(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def _require(name: str) -> str:
    raw = os.environ.get(name)
    if not raw:
        raise ValueError(f"{name} must be set")
    return raw


def load_config_from_env() -> GatewayConfig:
    required = {name: _require(name) for name in _REQUIRED}
    ttl_s = _parse_non_negative_int("SESSION_TTL_S", DEFAULT_SESSION_TTL_S)
    allowed_domains = parse_domains(os.environ.get("ALLOWED_DOMAINS"))
    if not allowed_domains:
        logger.warning("ALLOWED_DOMAINS is empty; every login will be rejected")
    return GatewayConfig(
        client_id=required["CLIENT_ID"],
        client_secret=required["CLIENT_SECRET"],
        redirect_uri=required["REDIRECT_URI"],
        state_string=required["STATE_STRING"],
        cookie_secret=required["COOKIE_SECRET"],
        allowed_domains=allowed_domains,
        frontend_url=(os.environ.get("FRONTEND_URL") or DEFAULT_FRONTEND_URL).rstrip("/"),
        session_ttl_s=max(1, ttl_s),
        api_base=(os.environ.get("WEBEX_API_BASE") or DEFAULT_API_BASE).rstrip("/"),
        http_timeout_s=max(1, _parse_non_negative_int("HTTP_TIMEOUT_S", 10)),
        gate_bot_tokens=_parse_bool01("GATE_BOT_TOKENS", False),
        environment=os.environ.get("GATEWAY_ENV") or "production",
        log_file=os.environ.get("GATEWAY_LOG_FILE") or "logs/app.log",
        db_path=os.environ.get("GATEWAY_DB") or None,
    )
