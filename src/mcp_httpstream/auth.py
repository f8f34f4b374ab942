"""Authentication seam for the HTTP stream transport.

The transport only consumes an ``Authenticator``; validating credentials is
the collaborator's job. ``APIKeyAuthenticator`` covers the common static-key
deployment.
"""

from __future__ import annotations

import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from starlette.requests import HTTPConnection

from mcp_httpstream.exceptions import Unauthorized

BEARER_PREFIX = "Bearer "
APIKEY_HEADER = "x-api-key"


@dataclass(frozen=True)
class Identity:
    """Who a request was authenticated as."""

    subject: str
    claims: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Credentials:
    """The request headers an authenticator may inspect, with lower-cased names."""

    headers: Mapping[str, str]

    @classmethod
    def from_connection(cls, conn: HTTPConnection) -> Credentials:
        return cls(headers={key.lower(): value for key, value in conn.headers.items()})

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def bearer_token(self) -> str | None:
        auth_header = self.header("authorization")
        if not auth_header or not auth_header.lower().startswith(BEARER_PREFIX.lower()):
            return None
        return auth_header[len(BEARER_PREFIX) :].strip() or None


class Authenticator(Protocol):
    async def validate(self, credentials: Credentials) -> Identity:
        """Return the caller's identity, or raise ``Unauthorized``."""
        ...


class APIKeyAuthenticator:
    """
    Accepts requests carrying one of a fixed set of API keys.

    The key is read from ``header_name``; if that header is absent,
    ``Authorization: Bearer <key>`` is accepted as well.
    """

    def __init__(self, api_keys: Iterable[str], header_name: str = APIKEY_HEADER):
        self._api_keys = [key for key in api_keys if key]
        if not self._api_keys:
            raise ValueError("APIKeyAuthenticator requires at least one API key")
        self.header_name = header_name.lower()

    async def validate(self, credentials: Credentials) -> Identity:
        key = credentials.header(self.header_name) or credentials.bearer_token
        if not key:
            raise Unauthorized(f"Missing API key ({self.header_name} header or Bearer token)")

        for index, candidate in enumerate(self._api_keys):
            if secrets.compare_digest(key.encode(), candidate.encode()):
                return Identity(subject=f"api-key-{index}")
        raise Unauthorized("Invalid API key")
