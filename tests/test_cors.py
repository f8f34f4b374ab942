from starlette.responses import Response

from mcp_httpstream.cors import CORSPolicy
from mcp_httpstream.settings import CORSSettings


def test_wildcard_allows_every_origin():
    policy = CORSPolicy()
    assert policy.is_origin_allowed("https://anywhere.example")
    assert policy.allow_origin_value("https://anywhere.example") == "*"


def test_origin_list_is_enforced():
    policy = CORSPolicy(CORSSettings(allow_origin="https://a.example, https://b.example"))

    assert policy.is_origin_allowed("https://b.example")
    assert not policy.is_origin_allowed("https://evil.example")
    # Same-origin and non-browser requests carry no Origin header.
    assert policy.is_origin_allowed(None)


def test_allowed_origin_is_echoed_with_vary():
    policy = CORSPolicy(CORSSettings(allow_origin="https://a.example"))
    response = policy.apply(Response(), "https://a.example")

    assert response.headers["access-control-allow-origin"] == "https://a.example"
    assert response.headers["vary"] == "Origin"
    assert "Mcp-Session-Id" in response.headers["access-control-expose-headers"]


def test_wildcard_response_has_no_vary():
    response = CORSPolicy().apply(Response(), "https://a.example")
    assert response.headers["access-control-allow-origin"] == "*"
    assert "vary" not in response.headers


def test_preflight_headers():
    settings = CORSSettings(allow_methods="GET, POST", max_age=60)
    response = CORSPolicy(settings).preflight("https://a.example")

    assert response.status_code == 204
    assert response.headers["access-control-allow-methods"] == "GET, POST"
    assert response.headers["access-control-max-age"] == "60"
    assert "Mcp-Session-Id" in response.headers["access-control-allow-headers"]
