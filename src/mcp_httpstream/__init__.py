from .auth import APIKeyAuthenticator, Authenticator, Credentials, Identity
from .batch import BatchCollector, BatchWindow
from .codec import DecodedPayload, MessageCodec
from .cors import CORSPolicy
from .dispatcher import DispatchContext, Dispatcher
from .exceptions import (
    Backpressure,
    LateDelivery,
    MalformedPayload,
    PayloadTooLarge,
    ProtocolViolation,
    SessionNotFound,
    TimedOut,
    TransportError,
    Unauthorized,
)
from .liveness import PingMonitor
from .registry import SessionRegistry
from .router import DeliveryRouter, DeliveryStatus
from .server import create_app, serve
from .session import LivenessState, Session, StreamFrame, StreamHandle
from .settings import AuthSettings, CORSSettings, HttpStreamSettings, PingSettings
from .transport import MCP_SESSION_ID_HEADER, HttpStreamTransport
from .types import (
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
    RequestId,
    ResponseMode,
)

__all__ = [
    "APIKeyAuthenticator",
    "AuthSettings",
    "Authenticator",
    "Backpressure",
    "BatchCollector",
    "BatchWindow",
    "CORSPolicy",
    "CORSSettings",
    "Credentials",
    "DecodedPayload",
    "DeliveryRouter",
    "DeliveryStatus",
    "DispatchContext",
    "Dispatcher",
    "ErrorData",
    "HttpStreamSettings",
    "HttpStreamTransport",
    "Identity",
    "JSONRPCErrorResponse",
    "JSONRPCMessage",
    "JSONRPCNotification",
    "JSONRPCRequest",
    "JSONRPCResponse",
    "JSONRPCResultResponse",
    "LateDelivery",
    "LivenessState",
    "MCP_SESSION_ID_HEADER",
    "MalformedPayload",
    "MessageCodec",
    "PayloadTooLarge",
    "PingMonitor",
    "PingSettings",
    "ProtocolViolation",
    "RequestId",
    "ResponseMode",
    "Session",
    "SessionNotFound",
    "SessionRegistry",
    "StreamFrame",
    "StreamHandle",
    "TimedOut",
    "TransportError",
    "Unauthorized",
    "create_app",
    "serve",
]
