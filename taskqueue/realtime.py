from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator
from urllib.parse import urlsplit, urlunsplit

import aiohttp

log = logging.getLogger(__name__)

CHANGE_EVENTS = ("INSERT", "UPDATE")


class RealtimeError(RuntimeError):
    pass


def build_websocket_url(base_url: str, api_key: str) -> str:
    parts = urlsplit(base_url.rstrip("/"))
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = f"{parts.path}/realtime/v1/websocket"
    return urlunsplit((scheme, parts.netloc, path, f"apikey={api_key}&vsn=1.0.0", ""))


class RealtimeFeed:
    """Change-feed subscription for one table over a Phoenix channel socket.

    ``listen()`` yields the new row of every INSERT/UPDATE on the table and
    raises ``RealtimeError`` when the socket drops; reconnecting is up to the
    caller.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        table: str = "ai_tasks",
        schema: str = "public",
        heartbeat_s: float = 25.0,
        join_timeout_s: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._ws_url = build_websocket_url(base_url, api_key)
        self._api_key = api_key
        self._table = table
        self._schema = schema
        self._heartbeat_s = heartbeat_s
        self._join_timeout_s = join_timeout_s
        self._session = session
        self._ref = 0

    @property
    def topic(self) -> str:
        return f"realtime:{self._schema}-{self._table}"

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def join_message(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"ack": False, "self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [
                        {"event": event, "schema": self._schema, "table": self._table}
                        for event in CHANGE_EVENTS
                    ],
                    "private": False,
                },
                "access_token": self._api_key,
            },
            "ref": self._next_ref(),
        }

    def heartbeat_message(self) -> dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    @staticmethod
    def extract_record(message: dict[str, Any]) -> dict[str, Any] | None:
        if message.get("event") != "postgres_changes":
            return None
        payload = message.get("payload")
        if not isinstance(payload, dict):
            return None
        data = payload.get("data")
        if not isinstance(data, dict):
            return None
        if str(data.get("type") or "").upper() not in CHANGE_EVENTS:
            return None
        record = data.get("record")
        return record if isinstance(record, dict) else None

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_s)
            await ws.send_json(self.heartbeat_message())

    async def _await_join(self, ws: aiohttp.ClientWebSocketResponse, join_ref: str) -> None:
        async with asyncio.timeout(self._join_timeout_s):
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    break
                data = json.loads(msg.data)
                if data.get("event") != "phx_reply" or data.get("ref") != join_ref:
                    continue
                payload = data.get("payload") or {}
                if payload.get("status") != "ok":
                    raise RealtimeError(f"Channel join rejected: {payload.get('response')}")
                return
        raise RealtimeError("Socket closed before channel join completed.")

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        heartbeat: asyncio.Task | None = None
        try:
            try:
                ws = await session.ws_connect(self._ws_url)
            except aiohttp.ClientError as exc:
                raise RealtimeError(f"Realtime connect failed: {exc}") from exc
            async with ws:
                join = self.join_message()
                await ws.send_json(join)
                try:
                    await self._await_join(ws, join["ref"])
                except TimeoutError as exc:
                    raise RealtimeError("Channel join timed out.") from exc
                log.info("Subscribed to changes on %s.%s", self._schema, self._table)
                heartbeat = asyncio.create_task(self._heartbeat(ws))
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        try:
                            data = json.loads(msg.data)
                        except ValueError:
                            log.debug("Ignoring non-JSON realtime frame")
                            continue
                        if data.get("event") == "phx_error":
                            raise RealtimeError(f"Channel error: {data.get('payload')}")
                        record = self.extract_record(data)
                        if record is not None:
                            yield record
                    elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
            raise RealtimeError("Realtime socket closed.")
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError, ConnectionError, aiohttp.ClientError):
                    await heartbeat
            if owns_session:
                await session.close()
