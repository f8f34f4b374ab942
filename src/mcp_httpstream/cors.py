from __future__ import annotations

from http import HTTPStatus

from starlette.responses import Response

from mcp_httpstream.settings import CORSSettings


class CORSPolicy:
    """Applies the configured CORS rules to transport responses.

    The policy is resolved once from settings and never changes afterwards.
    """

    def __init__(self, settings: CORSSettings | None = None):
        self.settings = settings or CORSSettings()
        self._allowed_origins = frozenset(
            origin.strip() for origin in self.settings.allow_origin.split(",") if origin.strip()
        )
        self._allow_any = "*" in self._allowed_origins

    def is_origin_allowed(self, origin: str | None) -> bool:
        # Origin is absent for same-origin and non-browser requests
        if not origin or self._allow_any:
            return True
        return origin in self._allowed_origins

    def allow_origin_value(self, origin: str | None) -> str:
        if self._allow_any:
            return "*"
        if origin in self._allowed_origins:
            return origin
        # The header takes a single origin
        return min(self._allowed_origins, default="null")

    def preflight(self, origin: str | None) -> Response:
        response = Response(status_code=HTTPStatus.NO_CONTENT)
        response.headers["Access-Control-Allow-Methods"] = self.settings.allow_methods
        response.headers["Access-Control-Allow-Headers"] = self.settings.allow_headers
        response.headers["Access-Control-Max-Age"] = str(self.settings.max_age)
        return self.apply(response, origin)

    def apply(self, response: Response, origin: str | None) -> Response:
        response.headers["Access-Control-Allow-Origin"] = self.allow_origin_value(origin)
        response.headers["Access-Control-Expose-Headers"] = self.settings.expose_headers
        if not self._allow_any:
            response.headers["Vary"] = "Origin"
        return response
