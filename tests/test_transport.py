"""End-to-end tests for the ASGI front door."""

from __future__ import annotations

import json
import math
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import anyio
import httpx
import pytest
from anyio.abc import TaskGroup

from mcp_httpstream.dispatcher import DispatchContext
from mcp_httpstream.exceptions import Backpressure
from mcp_httpstream.session import LivenessState
from mcp_httpstream.settings import AuthSettings, CORSSettings, HttpStreamSettings, PingSettings
from mcp_httpstream.transport import MCP_SESSION_ID_HEADER, HttpStreamTransport
from mcp_httpstream.types import (
    BACKPRESSURE,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    PAYLOAD_TOO_LARGE,
    SESSION_NOT_FOUND,
    UNAUTHORIZED,
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
)

from tests.test_helpers import EchoDispatcher

pytestmark = pytest.mark.anyio

ENDPOINT = "http://testserver/mcp"


def request(request_id: int | str, method: str = "tools/call", **params: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}


def make_settings(**overrides: Any) -> HttpStreamSettings:
    return HttpStreamSettings(_env_file=None, **overrides)


@asynccontextmanager
async def running(transport: HttpStreamTransport) -> AsyncIterator[httpx.AsyncClient]:
    async with transport.run():
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=transport), base_url=ENDPOINT) as client:
            yield client


class SSEConnection:
    """Drives one GET stream through raw ASGI so events can be read as they arrive."""

    def __init__(self, transport: HttpStreamTransport, headers: dict[str, str] | None = None):
        self._transport = transport
        self._headers = [(b"accept", b"text/event-stream")]
        self._headers += [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()]
        self._disconnected = anyio.Event()
        self._send, self._messages = anyio.create_memory_object_stream[dict[str, Any]](math.inf)
        self.finished = anyio.Event()
        self.status: int | None = None
        self.headers: dict[str, str] = {}

    async def open(self, tg: TaskGroup) -> None:
        tg.start_soon(self._run)
        start = await self._messages.receive()
        assert start["type"] == "http.response.start"
        self.status = start["status"]
        self.headers = {key.decode().lower(): value.decode() for key, value in start["headers"]}

    @property
    def session_id(self) -> str:
        return self.headers[MCP_SESSION_ID_HEADER]

    async def next_event(self) -> dict[str, Any]:
        async for message in self._messages:
            event: dict[str, Any] = {}
            for line in message.get("body", b"").decode().splitlines():
                field, _, value = line.partition(": ")
                if field in ("id", "event"):
                    event[field] = value
                elif field == "data":
                    event["data"] = json.loads(value)
            if "data" in event:
                return event
        raise anyio.EndOfStream

    def disconnect(self) -> None:
        self._disconnected.set()

    async def _run(self) -> None:
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/mcp",
            "raw_path": b"/mcp",
            "query_string": b"",
            "root_path": "",
            "headers": self._headers,
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }

        async def receive() -> dict[str, Any]:
            await self._disconnected.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict[str, Any]) -> None:
            await self._send.send(message)

        try:
            await self._transport(scope, receive, send)
        finally:
            self._send.close()
            self.finished.set()


class ScriptedDispatcher:
    """Echoes requests, with per-method behaviour for the batch scenarios."""

    async def handle(self, message: JSONRPCMessage, context: DispatchContext) -> JSONRPCResponse | None:
        if not isinstance(message, JSONRPCRequest):
            return None
        if message.method == "slow":
            await anyio.sleep(5)
        elif message.method == "silent":
            return None
        elif message.method == "broken":
            raise RuntimeError("boom")
        elif message.method == "null-error":
            return JSONRPCErrorResponse(id=None, error=ErrorData(code=INTERNAL_ERROR, message="Lost track of the request"))
        elif message.method == "send-null-error":
            await context.send(JSONRPCErrorResponse(id=None, error=ErrorData(code=PARSE_ERROR, message="Parse error")))
        elif message.method == "progress":
            await context.send(JSONRPCNotification(method="notifications/progress", params={"progress": 1}))
        return JSONRPCResultResponse(id=message.id, result={"method": message.method, "params": message.params})


async def test_requests_are_rejected_until_running(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=transport), base_url=ENDPOINT) as client:
        with pytest.raises(RuntimeError, match="Task group is not initialized"):
            await client.post("", json=request(1))


async def test_run_can_only_be_entered_once(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with transport.run():
        pass
    with pytest.raises(RuntimeError, match="only be called once"):
        async with transport.run():
            pass


async def test_post_creates_session_and_dispatches(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        response = await client.post("", json=request(1, tool="echo"))

        assert response.status_code == 202
        session_id = response.headers[MCP_SESSION_ID_HEADER]
        session = transport.registry.get(session_id)

        with anyio.fail_after(1):
            while not session.pending:
                await anyio.sleep(0.005)

        assert echo_dispatcher.received == [JSONRPCRequest(id=1, method="tools/call", params={"tool": "echo"})]
        assert echo_dispatcher.contexts[0].session_id == session_id
        assert list(session.pending) == [
            JSONRPCResultResponse(id=1, result={"method": "tools/call", "params": {"tool": "echo"}})
        ]

        follow_up = await client.post("", json=request(2), headers={MCP_SESSION_ID_HEADER: session_id})
        assert follow_up.status_code == 202
        assert follow_up.headers[MCP_SESSION_ID_HEADER] == session_id
        assert len(transport.registry) == 1


async def test_unknown_session_is_not_found(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        response = await client.post("", json=request(1), headers={MCP_SESSION_ID_HEADER: "nope"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == SESSION_NOT_FOUND
    assert response.json()["id"] is None


@pytest.mark.parametrize(
    ("body", "status", "code"),
    [
        (b"{not json", 400, PARSE_ERROR),
        (b"[]", 400, INVALID_REQUEST),
        (b'{"jsonrpc": "2.0"}', 400, INVALID_REQUEST),
        (b'{"jsonrpc": "1.0", "id": 1, "method": "x"}', 400, INVALID_REQUEST),
    ],
)
async def test_bad_payload_creates_no_session(echo_dispatcher: EchoDispatcher, body: bytes, status: int, code: int):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        response = await client.post("", content=body, headers={"content-type": "application/json"})

    assert response.status_code == status
    assert response.json()["error"]["code"] == code
    assert len(transport.registry) == 0
    assert echo_dispatcher.received == []


async def test_oversized_body_is_rejected_before_decoding(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings(max_message_size=64))
    async with running(transport) as client:
        response = await client.post("", json=request(1, text="x" * 100))

    assert response.status_code == 413
    assert response.json()["error"]["code"] == PAYLOAD_TOO_LARGE
    assert len(transport.registry) == 0
    assert echo_dispatcher.received == []


async def test_body_over_default_limit_is_rejected(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    body = json.dumps(request(1, blob="x" * (5 * 1024 * 1024))).encode()
    async with running(transport) as client:
        response = await client.post("", content=body, headers={"content-type": "application/json"})

    assert response.status_code == 413
    assert len(transport.registry) == 0


async def test_non_json_content_type_is_unsupported(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        response = await client.post("", content=b"{}", headers={"content-type": "text/plain"})

    assert response.status_code == 415
    assert len(transport.registry) == 0


async def test_duplicate_request_ids_reject_whole_payload(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        response = await client.post("", json=[request(1), request(1)])

    assert response.status_code == 400
    assert response.json()["error"]["code"] == INVALID_REQUEST
    assert len(transport.registry) == 0
    assert echo_dispatcher.received == []


async def test_orphan_client_response_is_rejected(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        created = await client.post("", json={"jsonrpc": "2.0", "method": "notifications/initialized"})
        session_id = created.headers[MCP_SESSION_ID_HEADER]

        response = await client.post(
            "",
            json={"jsonrpc": "2.0", "id": "never-sent", "result": {}},
            headers={MCP_SESSION_ID_HEADER: session_id},
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == INVALID_REQUEST


async def test_delete_closes_session(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        created = await client.post("", json=request(1))
        headers = {MCP_SESSION_ID_HEADER: created.headers[MCP_SESSION_ID_HEADER]}

        assert (await client.delete("", headers=headers)).status_code == 200
        assert len(transport.registry) == 0
        assert (await client.delete("", headers=headers)).status_code == 404
        assert (await client.post("", json=request(2), headers=headers)).status_code == 404
        assert (await client.delete("")).status_code == 400


async def test_unsupported_method(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        response = await client.put("", json=request(1))

    assert response.status_code == 405
    assert "POST" in response.headers["allow"]


async def test_preflight_and_origin_checks(echo_dispatcher: EchoDispatcher):
    settings = make_settings(cors=CORSSettings(allow_origin="https://app.example"))
    transport = HttpStreamTransport(echo_dispatcher, settings)
    async with running(transport) as client:
        preflight = await client.options("", headers={"origin": "https://app.example"})
        forbidden = await client.post("", json=request(1), headers={"origin": "https://evil.example"})
        allowed = await client.post("", json=request(1), headers={"origin": "https://app.example"})

    assert preflight.status_code == 204
    assert preflight.headers["access-control-allow-origin"] == "https://app.example"
    assert "DELETE" in preflight.headers["access-control-allow-methods"]
    assert forbidden.status_code == 403
    assert allowed.status_code == 202
    assert allowed.headers["access-control-allow-origin"] == "https://app.example"
    assert len(transport.registry) == 1


async def test_api_keys_are_enforced(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings(auth=AuthSettings(api_keys=["alpha", "beta"])))
    async with running(transport) as client:
        missing = await client.post("", json=request(1))
        wrong = await client.post("", json=request(1), headers={"x-api-key": "gamma"})
        created = await client.post("", json=request(1), headers={"x-api-key": "alpha"})
        session_id = created.headers[MCP_SESSION_ID_HEADER]
        hijack = await client.post(
            "", json=request(2), headers={"authorization": "Bearer beta", MCP_SESSION_ID_HEADER: session_id}
        )
        owner = await client.post(
            "", json=request(2), headers={"authorization": "Bearer alpha", MCP_SESSION_ID_HEADER: session_id}
        )

    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "Bearer"
    assert missing.json()["error"]["code"] == UNAUTHORIZED
    assert wrong.status_code == 401
    assert created.status_code == 202
    assert hijack.status_code == 401
    assert owner.status_code == 202
    assert echo_dispatcher.contexts[0].identity.subject == "api-key-0"


async def test_get_requires_event_stream_accept(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        response = await client.get("", headers={"accept": "application/json"})

    assert response.status_code == 406
    assert len(transport.registry) == 0


async def test_batch_mode_replies_with_one_array(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings(response_mode="batch", batch_timeout=1000))
    async with running(transport) as client:
        response = await client.post("", json=[request(1, n=1), request(2, n=2)])

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        body = sorted(response.json(), key=lambda item: item["id"])
        assert body == [
            {"jsonrpc": "2.0", "id": 1, "result": {"method": "tools/call", "params": {"n": 1}}},
            {"jsonrpc": "2.0", "id": 2, "result": {"method": "tools/call", "params": {"n": 2}}},
        ]

        single = await client.post(
            "", json=request(3, n=3), headers={MCP_SESSION_ID_HEADER: response.headers[MCP_SESSION_ID_HEADER]}
        )
        assert single.status_code == 200
        assert [item["id"] for item in single.json()] == [3]


async def test_batch_reply_with_quick_dispatcher():
    dispatcher = EchoDispatcher(delay=0.002)
    transport = HttpStreamTransport(dispatcher, make_settings(response_mode="batch", batch_timeout=5))
    async with running(transport) as client:
        with anyio.fail_after(2):
            response = await client.post("", json=request(1, n=1))

    assert response.status_code == 200
    assert response.json() == [{"jsonrpc": "2.0", "id": 1, "result": {"method": "tools/call", "params": {"n": 1}}}]


async def test_batch_mode_notifications_only_are_accepted():
    transport = HttpStreamTransport(ScriptedDispatcher(), make_settings(response_mode="batch"))
    async with running(transport) as client:
        response = await client.post("", json={"jsonrpc": "2.0", "method": "notifications/initialized"})

    assert response.status_code == 202


async def test_batch_window_without_responses_flushes_empty_array():
    transport = HttpStreamTransport(ScriptedDispatcher(), make_settings(response_mode="batch"))
    async with running(transport) as client:
        with anyio.fail_after(2):
            response = await client.post("", json=request(1, method="silent"))

    assert response.status_code == 200
    assert response.json() == []


async def test_batch_window_flushes_at_deadline():
    transport = HttpStreamTransport(ScriptedDispatcher(), make_settings(response_mode="batch", batch_timeout=50))
    async with running(transport) as client:
        with anyio.fail_after(2):
            response = await client.post("", json=[request(1), request(2, method="slow")])

    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [1]


async def test_batch_includes_dispatcher_notifications():
    transport = HttpStreamTransport(ScriptedDispatcher(), make_settings(response_mode="batch"))
    async with running(transport) as client:
        with anyio.fail_after(2):
            response = await client.post("", json=request(7, method="progress"))

    body = response.json()
    assert body[0] == {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}}
    assert body[1]["id"] == 7


async def test_dispatcher_failure_becomes_internal_error():
    transport = HttpStreamTransport(ScriptedDispatcher(), make_settings(response_mode="batch"))
    async with running(transport) as client:
        with anyio.fail_after(2):
            response = await client.post("", json=request(1, method="broken"))

    assert response.json() == [{"jsonrpc": "2.0", "id": 1, "error": {"code": INTERNAL_ERROR, "message": "Internal error"}}]


async def test_get_is_not_allowed_in_batch_mode(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings(response_mode="batch"))
    async with running(transport) as client:
        response = await client.get("", headers={"accept": "text/event-stream"})

    assert response.status_code == 405


async def test_get_for_unknown_session_is_not_found(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        response = await client.get("", headers={"accept": "text/event-stream", MCP_SESSION_ID_HEADER: "nope"})

    assert response.status_code == 404
    assert len(transport.registry) == 0


async def test_stream_receives_results_in_order(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        async with anyio.create_task_group() as tg:
            stream = SSEConnection(transport)
            await stream.open(tg)
            assert stream.status == 200
            headers = {MCP_SESSION_ID_HEADER: stream.session_id}

            with anyio.fail_after(2):
                for request_id in range(1, 4):
                    assert (await client.post("", json=request(request_id), headers=headers)).status_code == 202
                    event = await stream.next_event()
                    assert event["event"] == "message"
                    assert event["id"] == str(request_id)
                    assert event["data"]["id"] == request_id

            stream.disconnect()
            with anyio.fail_after(2):
                await stream.finished.wait()

        session = transport.registry.get(stream.session_id)
        assert session.stream is None


async def test_queued_results_flush_when_stream_attaches(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with running(transport) as client:
        created = await client.post("", json=request(1))
        session_id = created.headers[MCP_SESSION_ID_HEADER]
        session = transport.registry.get(session_id)
        with anyio.fail_after(1):
            while not session.pending:
                await anyio.sleep(0.005)

        async with anyio.create_task_group() as tg:
            stream = SSEConnection(transport, {MCP_SESSION_ID_HEADER: session_id})
            await stream.open(tg)
            with anyio.fail_after(2):
                event = await stream.next_event()
            assert event["data"]["id"] == 1
            assert not session.pending

            # Resuming from before the first event replays it.
            stream.disconnect()
            await stream.finished.wait()

            resumed = SSEConnection(transport, {MCP_SESSION_ID_HEADER: session_id, "last-event-id": "0"})
            await resumed.open(tg)
            with anyio.fail_after(2):
                replayed = await resumed.next_event()
            assert replayed["id"] == event["id"]
            assert replayed["data"] == event["data"]
            resumed.disconnect()


async def test_silent_stream_is_evicted_by_liveness_ping(echo_dispatcher: EchoDispatcher):
    settings = make_settings(ping=PingSettings(frequency=100, timeout=50))
    transport = HttpStreamTransport(echo_dispatcher, settings)
    async with running(transport) as client:
        async with anyio.create_task_group() as tg:
            started = time.monotonic()
            stream = SSEConnection(transport)
            await stream.open(tg)
            session = transport.registry.get(stream.session_id)

            with anyio.fail_after(2):
                ping = await stream.next_event()
                await stream.finished.wait()
            elapsed = time.monotonic() - started

        assert ping["data"]["method"] == "ping"
        assert elapsed >= 0.15 - 0.01
        assert session.liveness is LivenessState.TIMED_OUT
        assert stream.session_id not in transport.registry

        response = await client.post("", json=request(1), headers={MCP_SESSION_ID_HEADER: stream.session_id})
        assert response.status_code == 404


async def test_answered_pings_keep_stream_open(echo_dispatcher: EchoDispatcher):
    settings = make_settings(ping=PingSettings(frequency=100, timeout=50))
    transport = HttpStreamTransport(echo_dispatcher, settings)
    async with running(transport) as client:
        async with anyio.create_task_group() as tg:
            stream = SSEConnection(transport)
            await stream.open(tg)
            headers = {MCP_SESSION_ID_HEADER: stream.session_id}

            with anyio.fail_after(3):
                for _ in range(3):
                    ping = await stream.next_event()
                    assert ping["data"]["method"] == "ping"
                    ack = {"jsonrpc": "2.0", "id": ping["data"]["id"], "result": {}}
                    assert (await client.post("", json=ack, headers=headers)).status_code == 202

            assert stream.session_id in transport.registry
            assert not stream.finished.is_set()
            stream.disconnect()

    # Probe answers are consumed by the transport.
    assert echo_dispatcher.received == []


async def test_shutdown_closes_open_streams(echo_dispatcher: EchoDispatcher):
    transport = HttpStreamTransport(echo_dispatcher, make_settings())
    async with anyio.create_task_group() as tg:
        async with transport.run():
            stream = SSEConnection(transport)
            await stream.open(tg)
            assert len(transport.registry) == 1

        with anyio.fail_after(2):
            await stream.finished.wait()
    assert len(transport.registry) == 0


async def test_full_queue_reports_backpressure_to_dispatcher():
    transport = HttpStreamTransport(ScriptedDispatcher(), make_settings(max_queue_size=1))
    async with running(transport) as client:
        created = await client.post("", json={"jsonrpc": "2.0", "method": "notifications/initialized"})
        session_id = created.headers[MCP_SESSION_ID_HEADER]
        context = DispatchContext(session_id, None, transport.router)

        await context.send(JSONRPCNotification(method="notifications/message", params={"seq": 1}))
        with pytest.raises(Backpressure) as excinfo:
            await context.send(JSONRPCNotification(method="notifications/message", params={"seq": 2}))

    assert excinfo.value.code == BACKPRESSURE
    assert excinfo.value.dropped.params == {"seq": 1}


async def test_null_id_error_result_does_not_break_transport():
    transport = HttpStreamTransport(ScriptedDispatcher(), make_settings(response_mode="batch"))
    async with running(transport) as client:
        with anyio.fail_after(2):
            failed = await client.post("", json=request(1, method="null-error"))
            headers = {MCP_SESSION_ID_HEADER: failed.headers[MCP_SESSION_ID_HEADER]}
            sent = await client.post("", json=request(2, method="send-null-error"), headers=headers)
            follow_up = await client.post("", json=request(3), headers=headers)

    assert failed.status_code == 200
    assert failed.json() == [
        {"jsonrpc": "2.0", "id": None, "error": {"code": INTERNAL_ERROR, "message": "Lost track of the request"}}
    ]
    assert sent.json() == [
        {"jsonrpc": "2.0", "id": None, "error": {"code": PARSE_ERROR, "message": "Parse error"}},
        {"jsonrpc": "2.0", "id": 2, "result": {"method": "send-null-error", "params": {}}},
    ]
    assert follow_up.status_code == 200
    assert [item["id"] for item in follow_up.json()] == [3]


async def test_slow_batch_request_is_not_evicted_by_liveness():
    dispatcher = EchoDispatcher(delay=0.4)
    settings = make_settings(response_mode="batch", ping=PingSettings(frequency=100, timeout=50))
    transport = HttpStreamTransport(dispatcher, settings)
    async with running(transport) as client:
        with anyio.fail_after(2):
            response = await client.post("", json=request(1, n=1))

        assert response.status_code == 200
        assert response.json() == [{"jsonrpc": "2.0", "id": 1, "result": {"method": "tools/call", "params": {"n": 1}}}]
        assert response.headers[MCP_SESSION_ID_HEADER] in transport.registry


async def test_size_ceiling_applies_before_authentication(echo_dispatcher: EchoDispatcher):
    settings = make_settings(max_message_size=64, auth=AuthSettings(api_keys=["alpha"]))
    transport = HttpStreamTransport(echo_dispatcher, settings)
    async with running(transport) as client:
        response = await client.post("", json=request(1, text="x" * 100))

    assert response.status_code == 413
    assert len(transport.registry) == 0
