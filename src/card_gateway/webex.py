"""Thin asynchronous client for the handful of Webex endpoints the gateway uses."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib.parse import quote

import aiohttp

from .errors import UpstreamError

CARD_CONTENT_TYPE = "application/vnd.microsoft.card.adaptive"


class WebexClient:
    def __init__(self, api_base: str, *, timeout_s: float = 10) -> None:
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: aiohttp.ClientSession | None = None

    @property
    def api_base(self) -> str:
        return self._api_base

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def exchange_code(self, *, client_id: str, client_secret: str, code: str, redirect_uri: str) -> dict:
        form = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
        }
        return await self._request("token exchange", "POST", "/access_token", data=form)

    async def get_me(self, access_token: str) -> dict:
        return await self._request("profile fetch", "GET", "/people/me", token=access_token)

    async def list_rooms(self, access_token: str, limit: int) -> list[dict]:
        payload = await self._request(
            "room listing",
            "GET",
            "/rooms",
            token=access_token,
            params={"max": str(limit), "sortBy": "lastactivity"},
        )
        items = payload.get("items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise UpstreamError("room listing", reason="response carried no items")
        return items

    async def create_message(self, access_token: str, room_id: str, card: Any, markdown: str) -> dict:
        body = {
            "roomId": room_id,
            "markdown": markdown,
            "attachments": [{"contentType": CARD_CONTENT_TYPE, "content": card}],
        }
        return await self._request("message send", "POST", "/messages", token=access_token, json_body=body)

    async def delete_message(self, access_token: str, message_id: str) -> None:
        path = f"/messages/{quote(message_id, safe='')}"
        await self._request("message delete", "DELETE", path, token=access_token)

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        token: str | None = None,
        params: dict[str, str] | None = None,
        data: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> Any:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        headers = {}
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with self._session.request(
                method,
                self._api_base + path,
                headers=headers,
                params=params,
                data=data,
                json=json_body,
            ) as response:
                text = await response.text()
                payload = _decode(text)
                if response.status >= 300:
                    raise UpstreamError(operation, status=response.status, body=payload)
                return payload if payload is not None else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamError(operation, reason=type(exc).__name__) from exc


def _decode(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text
