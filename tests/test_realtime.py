import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

sys.path.append(str(Path(__file__).resolve().parents[1]))

from taskqueue.realtime import RealtimeError, RealtimeFeed, build_websocket_url  # noqa: E402


def _change(kind: str, record: dict[str, Any]) -> dict[str, Any]:
    return {
        "topic": "realtime:public-ai_tasks",
        "event": "postgres_changes",
        "payload": {"data": {"type": kind, "record": record}, "ids": [1]},
        "ref": None,
    }


def test_websocket_url_uses_socket_scheme() -> None:
    assert (
        build_websocket_url("https://abc.supabase.co/", "k")
        == "wss://abc.supabase.co/realtime/v1/websocket?apikey=k&vsn=1.0.0"
    )
    assert build_websocket_url("http://localhost:54321", "k").startswith("ws://localhost:54321/")


def test_join_message_subscribes_to_inserts_and_updates() -> None:
    feed = RealtimeFeed("https://abc.supabase.co", "k", table="jobs", schema="queue")

    join = feed.join_message()

    assert join["topic"] == "realtime:queue-jobs"
    assert join["event"] == "phx_join"
    changes = join["payload"]["config"]["postgres_changes"]
    assert [change["event"] for change in changes] == ["INSERT", "UPDATE"]
    assert all(change["table"] == "jobs" for change in changes)
    assert feed.heartbeat_message()["ref"] != join["ref"]


def test_extract_record_filters_events() -> None:
    record = {"id": "t1", "prompt": "hi", "status": "pending"}

    assert RealtimeFeed.extract_record(_change("INSERT", record)) == record
    assert RealtimeFeed.extract_record(_change("UPDATE", record)) == record
    assert RealtimeFeed.extract_record(_change("DELETE", record)) is None
    assert RealtimeFeed.extract_record({"event": "phx_reply", "payload": {}}) is None


def test_listen_yields_changes_until_socket_closes() -> None:
    seen_keys: list[str] = []

    async def socket(request: web.Request) -> web.WebSocketResponse:
        seen_keys.append(request.query.get("apikey", ""))
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        join = await ws.receive_json()
        await ws.send_json(
            {"topic": join["topic"], "event": "phx_reply", "payload": {"status": "ok", "response": {}}, "ref": join["ref"]}
        )
        await ws.send_json(_change("INSERT", {"id": "t1", "prompt": "one", "status": "pending"}))
        await ws.send_json(_change("DELETE", {"id": "t0"}))
        await ws.send_json(_change("UPDATE", {"id": "t2", "prompt": "two", "status": "pending"}))
        await ws.close()
        return ws

    async def scenario() -> list[dict[str, Any]]:
        app = web.Application()
        app.router.add_get("/realtime/v1/websocket", socket)
        server = TestServer(app)
        await server.start_server()
        feed = RealtimeFeed(str(server.make_url("")).rstrip("/"), "anon")
        records: list[dict[str, Any]] = []
        try:
            with pytest.raises(RealtimeError):
                async for record in feed.listen():
                    records.append(record)
        finally:
            await server.close()
        return records

    records = asyncio.run(scenario())

    assert [record["id"] for record in records] == ["t1", "t2"]
    assert seen_keys == ["anon"]


def test_listen_raises_when_join_rejected() -> None:
    async def socket(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        join = await ws.receive_json()
        await ws.send_json(
            {
                "topic": join["topic"],
                "event": "phx_reply",
                "payload": {"status": "error", "response": {"reason": "unauthorized"}},
                "ref": join["ref"],
            }
        )
        await ws.receive()
        return ws

    async def scenario() -> None:
        app = web.Application()
        app.router.add_get("/realtime/v1/websocket", socket)
        server = TestServer(app)
        await server.start_server()
        feed = RealtimeFeed(str(server.make_url("")).rstrip("/"), "anon")
        try:
            async for _ in feed.listen():
                pass
        finally:
            await server.close()

    with pytest.raises(RealtimeError, match="rejected"):
        asyncio.run(scenario())
