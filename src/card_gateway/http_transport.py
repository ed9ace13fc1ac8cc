from __future__ import annotations

import logging
from typing import Any

from aiohttp import web

from .config import GatewayConfig
from .cookies import COOKIE_NAME, sign_session_id, unsign_cookie
from .errors import (
    DomainNotAllowed,
    InvalidBotToken,
    NoActiveSession,
    PersistenceError,
    ProtocolError,
    UpstreamError,
)
from .ledger import DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT, SEND_CARD, UPLOAD_IMAGE, ActivityLedger, SendStats
from .lifecycle import SessionLifecycle
from .messages import MessageProxy
from .oauth import CredentialExchanger, authorize_url
from .rooms import DEFAULT_ROOM_LIMIT, MAX_ROOM_LIMIT, RoomLister
from .sessions import Session, SessionStore
from .sqlite_backend import SQLiteBackend
from .sqlite_ledger import SQLiteActivityLedger
from .sqlite_sessions import SQLiteSessionStore
from .webex import WebexClient

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        sessions,
        ledger,
        webex: WebexClient,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.config = config
        self.sessions = sessions
        self.ledger = ledger
        self.webex = webex
        self.backend = backend
        self.lifecycle = SessionLifecycle(config, CredentialExchanger(config, webex), sessions, ledger)
        self.rooms = RoomLister(webex)
        self.messages = MessageProxy(webex, ledger)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _unauthorized() -> web.Response:
    return web.json_response({"message": "You are not authenticated."}, status=401)


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"message": message}, status=400)


def _redirect(location: str) -> web.Response:
    return web.Response(status=302, headers={"Location": location})


def _parse_limit(request: web.Request, default: int, maximum: int) -> int:
    try:
        limit = int(request.query.get("max", ""))
    except ValueError:
        return default
    if limit < 1:
        return default
    return min(limit, maximum)


def _set_session_cookie(response: web.Response, runtime: Runtime, session: Session) -> None:
    response.set_cookie(
        COOKIE_NAME,
        sign_session_id(runtime.config.cookie_secret, session.session_id),
        max_age=runtime.config.session_ttl_s,
        httponly=True,
        samesite="Lax",
    )


def _load_session(request: web.Request) -> Session | None:
    runtime: Runtime = request.app["runtime"]
    session_id = unsign_cookie(runtime.config.cookie_secret, request.cookies.get(COOKIE_NAME))
    if session_id is None:
        return None
    try:
        return runtime.sessions.get(session_id)
    except PersistenceError as exc:
        logger.error("session lookup failed: %s", exc.message)
        return None


def _authenticate_request(request: web.Request) -> Session | None:
    session = _load_session(request)
    if session is None or not session.is_authenticated:
        logger.error("%s: email or access token missing from session data.", request.path)
        return None
    return session


async def handle_login(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    return _redirect(authorize_url(runtime.config))


async def handle_callback(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        session = await runtime.lifecycle.login(request.query.get("code"), request.query.get("state"))
    except DomainNotAllowed as exc:
        return web.Response(text=exc.message, status=403)
    except ProtocolError as exc:
        return web.Response(text=exc.message, status=400)
    except UpstreamError:
        return web.Response(text="An error occurred during the OAuth process. Please try again.", status=502)
    except PersistenceError as exc:
        logger.error("/callback: could not store session: %s", exc.message)
        return web.Response(text="Failed to log in. Please try again.", status=500)

    response = _redirect(runtime.config.frontend_url)
    _set_session_cookie(response, runtime, session)
    return response


async def handle_bot(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    token = request.match_info["token"]
    current = _load_session(request)
    try:
        session = await runtime.lifecycle.switch_to_token(current, token)
    except InvalidBotToken as exc:
        return _invalid_request(exc.message)
    except PersistenceError as exc:
        logger.error("/bot: could not store session: %s", exc.message)
        return web.json_response({"message": "Failed to switch identity."}, status=500)

    identity = session.identity
    response = web.json_response(
        {
            "avatarUrl": identity.avatar if identity else "",
            "isAuthenticated": True,
            "nickName": identity.nick_name if identity else "",
            "isBot": True,
        }
    )
    _set_session_cookie(response, runtime, session)
    return response


async def handle_logout(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _load_session(request)
    try:
        runtime.lifecycle.logout(session)
    except NoActiveSession as exc:
        return web.Response(text=exc.message, status=400)
    except PersistenceError as exc:
        logger.error("/logout: failed to destroy session: %s", exc.message)
        return web.Response(text="Failed to log out. Please try again.", status=500)

    response = _redirect(f"{runtime.config.frontend_url}/")
    response.del_cookie(COOKIE_NAME)
    return response


async def handle_details(request: web.Request) -> web.Response:
    session = _load_session(request)
    if session is None or not session.has_profile:
        return web.json_response({"avatarUrl": "", "isAuthenticated": False, "nickName": "", "isBot": False})
    return web.json_response(
        {
            "avatarUrl": session.identity.avatar,
            "isAuthenticated": True,
            "nickName": session.identity.nick_name,
            "isBot": session.is_bot,
        }
    )


async def handle_rooms(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    limit = _parse_limit(request, DEFAULT_ROOM_LIMIT, MAX_ROOM_LIMIT)
    rooms = await runtime.rooms.list_rooms(session.credential, limit, email=session.email)
    return web.json_response([room.to_dict() for room in rooms])


async def handle_send_card(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("malformed json")

    room_id = body.get("roomId")
    card = body.get("card")
    room_title = body.get("roomTitle")
    card_type = body.get("type")
    if not isinstance(room_id, str) or not room_id or card is None:
        return _invalid_request("roomId and card required")
    if room_title is not None and not isinstance(room_title, str):
        return _invalid_request("roomTitle must be a string")

    try:
        payload = await runtime.messages.send_card(session, room_id, room_title, card, card_type)
    except UpstreamError as exc:
        return web.json_response({"message": exc.message}, status=500)
    return web.json_response(payload)


async def handle_delete_card(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        await runtime.messages.delete_card(session, request.match_info["message_id"])
    except UpstreamError as exc:
        return web.json_response({"message": exc.message}, status=500)
    return web.Response(status=200)


async def _ledger_listing(request: web.Request, activity: str | None, render) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    limit = _parse_limit(request, DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT)
    logger.info("%s: %s is retrieving up to %d records", request.path, session.email, limit)
    try:
        records = runtime.ledger.list_for(session.email, activity=activity, limit=limit)
    except PersistenceError as exc:
        logger.error("%s: %s query failed: %s", request.path, session.email, exc.message)
        return web.json_response([])
    return web.json_response([render(record) for record in records])


async def handle_card_list(request: web.Request) -> web.Response:
    return await _ledger_listing(request, SEND_CARD, lambda record: record.to_card())


async def handle_history(request: web.Request) -> web.Response:
    return await _ledger_listing(request, None, lambda record: record.to_history())


async def handle_images(request: web.Request) -> web.Response:
    return await _ledger_listing(request, UPLOAD_IMAGE, lambda record: record.to_image())


async def handle_system(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        stats = runtime.ledger.send_stats()
    except PersistenceError as exc:
        logger.error("/system: aggregate failed: %s", exc.message)
        stats = SendStats()
    return web.json_response(stats.to_dict())


def create_app(
    config: GatewayConfig,
    *,
    db_path: str | None = None,
    webex: WebexClient | None = None,
) -> web.Application:
    db_path = db_path if db_path is not None else config.db_path
    backend: SQLiteBackend | None = None
    sessions: Any
    ledger: Any
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        sessions = SQLiteSessionStore(backend, ttl_ms=config.session_ttl_ms)
        ledger = SQLiteActivityLedger(backend)
    else:
        sessions = SessionStore(ttl_ms=config.session_ttl_ms)
        ledger = ActivityLedger()

    webex = webex or WebexClient(config.api_base, timeout_s=config.http_timeout_s)
    runtime = Runtime(config=config, sessions=sessions, ledger=ledger, webex=webex, backend=backend)

    app = web.Application()
    app["runtime"] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/login", handle_login)
    app.router.add_get("/callback", handle_callback)
    app.router.add_get("/bot/{token}", handle_bot)
    app.router.add_get("/logout", handle_logout)
    app.router.add_get("/status", handle_details)
    app.router.add_get("/details", handle_details)
    app.router.add_get("/rooms", handle_rooms)
    app.router.add_get("/card", handle_card_list)
    app.router.add_post("/card", handle_send_card)
    app.router.add_delete("/card/{message_id}", handle_delete_card)
    app.router.add_get("/history", handle_history)
    app.router.add_get("/images", handle_images)
    app.router.add_get("/system", handle_system)

    async def start_webex(_: web.Application) -> None:
        await webex.start()

    async def close_webex(_: web.Application) -> None:
        await webex.close()

    app.on_startup.append(start_webex)
    app.on_cleanup.append(close_webex)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app
