"""
HTTP stream transport front door.

``HttpStreamTransport`` is an ASGI application. It admits each HTTP request
(CORS, size limit, authentication), resolves or creates the session, decodes
the JSON-RPC payload and hands every message to the dispatcher. Results flow
back through the ``DeliveryRouter``:

- in ``stream`` mode they are pushed on the session's SSE stream, opened with
  GET, and the POST is answered with 202 Accepted;
- in ``batch`` mode the POST is held open and answered with one JSON array once
  its batch window closes.

Use ``run()`` in the lifespan of the hosting application.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from http import HTTPStatus

import anyio
from anyio.abc import TaskGroup
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from mcp_httpstream.auth import APIKeyAuthenticator, Authenticator, Credentials, Identity
from mcp_httpstream.batch import BatchCollector, BatchWindow
from mcp_httpstream.codec import MessageCodec
from mcp_httpstream.cors import CORSPolicy
from mcp_httpstream.dispatcher import DispatchContext, Dispatcher
from mcp_httpstream.exceptions import (
    Backpressure,
    LateDelivery,
    ProtocolViolation,
    SessionNotFound,
    TimedOut,
    TransportError,
    Unauthorized,
)
from mcp_httpstream.http_body import read_request_body
from mcp_httpstream.liveness import PingMonitor
from mcp_httpstream.registry import SessionRegistry
from mcp_httpstream.router import DeliveryRouter
from mcp_httpstream.session import Session, StreamFrame, StreamHandle
from mcp_httpstream.settings import HttpStreamSettings
from mcp_httpstream.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    RESPONSE_TYPES,
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCRequest,
    RequestId,
)

logger = logging.getLogger(__name__)

MCP_SESSION_ID_HEADER = "mcp-session-id"
LAST_EVENT_ID_HEADER = "last-event-id"

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_SSE = "text/event-stream"

ALLOWED_METHODS = "GET, POST, DELETE, OPTIONS"


class HttpStreamTransport:
    """
    ASGI front door for the HTTP stream transport.

    Important: ``run()`` can only be entered once per instance; requests are
    rejected until it is running.

    Args:
        dispatcher: Executes the RPC methods behind the transport
        settings: Transport settings; defaults are read from the environment
        authenticator: Validates request credentials. When omitted and
            ``settings.auth.api_keys`` is non-empty, an ``APIKeyAuthenticator``
            is built from the settings; otherwise requests are not authenticated.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        settings: HttpStreamSettings | None = None,
        authenticator: Authenticator | None = None,
    ):
        self.settings = settings or HttpStreamSettings()
        if authenticator is None and self.settings.auth.api_keys:
            authenticator = APIKeyAuthenticator(self.settings.auth.api_keys, self.settings.auth.header_name)
        self.dispatcher = dispatcher
        self.authenticator = authenticator

        self.codec = MessageCodec(self.settings.max_message_size)
        self.cors = CORSPolicy(self.settings.cors)
        self.registry = SessionRegistry(max_queue_size=self.settings.max_queue_size)
        self.collector = BatchCollector(self.settings.batch_timeout_seconds)
        self.router = DeliveryRouter(self.registry, self.collector)
        self.monitor = PingMonitor(
            self.registry,
            self.router,
            frequency=self.settings.ping.frequency_seconds,
            timeout=self.settings.ping.timeout_seconds,
        )

        self._task_group: TaskGroup | None = None
        self._run_lock = anyio.Lock()
        self._has_started = False

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Run the transport: owns the dispatch tasks and the ping monitor.

        On exit every session is removed, which closes all open streams.
        """
        async with self._run_lock:
            if self._has_started:
                raise RuntimeError(
                    "HttpStreamTransport .run() can only be called once per instance. "
                    "Create a new instance if you need to run again."
                )
            self._has_started = True

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            await tg.start(self.monitor.run)
            logger.info(f"HTTP stream transport started ({self.settings.response_mode} mode)")
            try:
                yield
            finally:
                logger.info("HTTP stream transport shutting down")
                tg.cancel_scope.cancel()
                self._task_group = None
                with anyio.CancelScope(shield=True):
                    await self.registry.aclose()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.handle_request(scope, receive, send)

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")

        request = Request(scope, receive)
        origin = request.headers.get("origin")
        if not self.cors.is_origin_allowed(origin):
            logger.warning(f"Rejected request from origin {origin}")
            response = self._json_error(HTTPStatus.FORBIDDEN, "Origin not allowed")
        elif request.method == "OPTIONS":
            response = self.cors.preflight(origin)
        else:
            try:
                response = await self._handle(request)
            except TransportError as exc:
                logger.debug(f"{request.method} rejected: {exc.message}")
                response = self._error_response(exc)
            self.cors.apply(response, origin)

        await response(scope, receive, send)

    async def _handle(self, request: Request) -> Response:
        match request.method:
            case "POST":
                return await self._handle_post(request)
            case "GET":
                return await self._handle_get(request)
            case "DELETE":
                return await self._handle_delete(request)
            case _:
                response = self._json_error(HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                response.headers["Allow"] = ALLOWED_METHODS
                return response

    async def _handle_post(self, request: Request) -> Response:
        # Size ceiling first, then credentials, then anything that touches sessions.
        body = await read_request_body(request, max_body_bytes=self.settings.max_message_size)
        identity = await self._authenticate(request)

        content_type = request.headers.get("content-type", "")
        if not content_type.lower().startswith(CONTENT_TYPE_JSON):
            return self._json_error(HTTPStatus.UNSUPPORTED_MEDIA_TYPE, "Content-Type must be application/json")

        session = self._existing_session(request, identity)
        payload = self.codec.decode(body)

        created = session is None
        if session is None:
            session = self.registry.create(self.settings.response_mode, identity)
        try:
            forward, window = await self._admit(session, payload.messages)
        except TransportError:
            if created:
                await self.registry.remove(session.session_id)
            raise

        assert self._task_group is not None
        for message in forward:
            self._task_group.start_soon(self._dispatch, session.session_id, identity, message)

        headers = {MCP_SESSION_ID_HEADER: session.session_id}
        if window is None:
            return Response(status_code=HTTPStatus.ACCEPTED, headers=headers)

        try:
            messages = await self.collector.wait(session, window)
        except TimedOut:
            # Eviction ends the exchange; it is not reported as a protocol error.
            raise SessionNotFound(session.session_id) from None
        return Response(self.codec.encode_batch(messages), media_type=CONTENT_TYPE_JSON, headers=headers)

    async def _handle_get(self, request: Request) -> Response:
        identity = await self._authenticate(request)

        if CONTENT_TYPE_SSE not in request.headers.get("accept", ""):
            return self._json_error(HTTPStatus.NOT_ACCEPTABLE, "Accept must include text/event-stream")
        if self.settings.response_mode != "stream":
            response = self._json_error(HTTPStatus.METHOD_NOT_ALLOWED, "Streaming is disabled in batch mode")
            response.headers["Allow"] = "POST, DELETE, OPTIONS"
            return response

        session = self._existing_session(request, identity) or self.registry.create("stream", identity)
        handle = StreamHandle()
        backlog = await self.router.attach(session.session_id, handle, request.headers.get(LAST_EVENT_ID_HEADER))
        logger.debug(f"Opened stream for session {session.session_id}")

        return EventSourceResponse(
            self._event_stream(session.session_id, handle, backlog),
            headers={MCP_SESSION_ID_HEADER: session.session_id},
        )

    async def _handle_delete(self, request: Request) -> Response:
        identity = await self._authenticate(request)

        session = self._existing_session(request, identity)
        if session is None:
            raise ProtocolViolation("Missing Mcp-Session-Id header")
        await self.registry.remove(session.session_id)
        logger.info(f"Session {session.session_id} closed by client")
        return Response(status_code=HTTPStatus.OK)

    async def _authenticate(self, request: Request) -> Identity | None:
        if self.authenticator is None:
            return None
        return await self.authenticator.validate(Credentials.from_connection(request))

    def _existing_session(self, request: Request, identity: Identity | None) -> Session | None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id is None:
            return None
        session = self.registry.get(session_id)
        if session.identity is not None and (identity is None or identity.subject != session.identity.subject):
            raise Unauthorized("Session belongs to a different identity")
        return session

    async def _admit(self, session: Session, messages: list[JSONRPCMessage]) -> tuple[list[JSONRPCMessage], BatchWindow | None]:
        """Correlate an inbound payload with the session.

        Either every message is admitted or none is: request ids must be new,
        and responses must answer a request the server issued. Probe answers
        are consumed here; everything else is returned for dispatch, together
        with the batch window opened for the payload's requests.
        """
        async with session.lock:
            if session.closed:
                raise SessionNotFound(session.session_id)

            request_ids: list[RequestId] = []
            for message in messages:
                if isinstance(message, JSONRPCRequest):
                    if message.id in session.awaited or message.id in request_ids:
                        raise ProtocolViolation(f"Duplicate request id {message.id!r}")
                    request_ids.append(message.id)
                elif isinstance(message, RESPONSE_TYPES) and message.id is not None:
                    if message.id not in session.issued:
                        raise ProtocolViolation(f"Response id {message.id!r} does not match an issued request")

            forward: list[JSONRPCMessage] = []
            for message in messages:
                if isinstance(message, RESPONSE_TYPES) and message.id is not None:
                    if self.monitor.acknowledge(session, message.id):
                        continue
                    session.issued.discard(message.id)
                forward.append(message)

            session.awaited.update(request_ids)
            if session.mode == "batch":
                # A batch client only sees pings in replies, so any POST counts as liveness.
                session.mark_alive()
            window = None
            if session.mode == "batch" and request_ids:
                window = self.collector.open_window(session, request_ids)
            session.touch()
        return forward, window

    async def _dispatch(self, session_id: str, identity: Identity | None, message: JSONRPCMessage) -> None:
        context = DispatchContext(session_id, identity, self.router)
        try:
            result = await self.dispatcher.handle(message, context)
        except Exception:
            logger.exception(f"Dispatcher failed on {type(message).__name__} for session {session_id}")
            if not isinstance(message, JSONRPCRequest):
                return
            result = JSONRPCErrorResponse(id=message.id, error=ErrorData(code=INTERNAL_ERROR, message="Internal error"))

        if not isinstance(message, JSONRPCRequest):
            return

        try:
            if result is None:
                await self.router.resolve(session_id, message.id)
                return
            await self.router.deliver(session_id, result)
        except SessionNotFound:
            logger.debug(f"Discarding result for closed session {session_id}")
            return
        except LateDelivery as exc:
            logger.warning(exc.message)
            return
        except Backpressure:
            # Already reported by the router; the result itself is queued.
            pass
        except ProtocolViolation as exc:
            logger.warning(f"Dispatcher answered request {message.id!r} with an uncorrelated response: {exc.message}")
            await self._resolve_quietly(session_id, message.id)
            return
        except Exception:
            logger.exception(f"Failed to route the result of request {message.id!r} for session {session_id}")
            await self._resolve_quietly(session_id, message.id)
            return

        if result.id != message.id:
            # A null-id error carries no correlation; the request still counts as answered.
            await self._resolve_quietly(session_id, message.id)

    async def _resolve_quietly(self, session_id: str, request_id: RequestId) -> None:
        with contextlib.suppress(SessionNotFound):
            await self.router.resolve(session_id, request_id)

    async def _event_stream(
        self, session_id: str, handle: StreamHandle, backlog: list[StreamFrame]
    ) -> AsyncIterator[dict[str, str]]:
        try:
            for frame in backlog:
                yield self._sse_event(frame)
            async for frame in handle.frames():
                yield self._sse_event(frame)
        finally:
            # Close first: a deliver blocked on this handle holds the session lock.
            handle.close()
            with anyio.CancelScope(shield=True):
                await self.router.detach(session_id, handle)
            logger.debug(f"Stream for session {session_id} closed")

    def _sse_event(self, frame: StreamFrame) -> dict[str, str]:
        return {
            "event": "message",
            "id": frame.event_id,
            "data": self.codec.encode(frame.message).decode(),
        }

    def _error_response(self, exc: TransportError) -> Response:
        response = Response(self.codec.error_payload(exc), status_code=exc.status_code, media_type=CONTENT_TYPE_JSON)
        if isinstance(exc, Unauthorized):
            response.headers["WWW-Authenticate"] = "Bearer"
        return response

    def _json_error(self, status_code: int, message: str) -> Response:
        error = JSONRPCErrorResponse(id=None, error=ErrorData(code=INVALID_REQUEST, message=message))
        return Response(self.codec.encode(error), status_code=status_code, media_type=CONTENT_TYPE_JSON)
