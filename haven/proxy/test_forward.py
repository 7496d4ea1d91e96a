"""
Tests for forwarding plain HTTP requests to the x-url target.

Tests cover:
- Parsing and validation of x-url and x-headers
- Method, header and body forwarding
- Caching header removal and the forced no-cache
- Streaming of the upstream body
- Error scenarios (connection errors, malformed metadata)
"""

import json
import logging

import httpx
import pytest
from starlette.requests import Request

from haven.proxy.errors import ForwardMetadataError
from haven.proxy.forward import (
    ForwardHandler,
    ForwardRequest,
    parse_forward_headers,
    sanitize_response_headers,
    validate_target_url,
)
from haven.vars import GatewayConfig

TARGET_URL = "https://upstream.example.com/api/data"


def make_request(method="GET", headers=None, body=b"", path="/fetch"):
    """Build a real Starlette request around an ASGI scope."""
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": raw_headers,
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 51000),
    }
    body_sent = False

    async def receive():
        nonlocal body_sent
        if body_sent:
            return {"type": "http.disconnect"}
        body_sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def upstream_response(status_code, headers=None, content=b""):
    """An unread upstream response, as a network transport would return it."""
    return httpx.Response(
        status_code, headers=headers, stream=httpx.ByteStream(content)
    )


def forward_headers(url=TARGET_URL, headers=None):
    return {"x-url": url, "x-headers": json.dumps(headers or {})}


async def read_body(response) -> bytes:
    chunks = [chunk async for chunk in response.body_iterator]
    if response.background is not None:
        await response.background()
    return b"".join(
        chunk if isinstance(chunk, bytes) else chunk.encode() for chunk in chunks
    )


@pytest.fixture
def config():
    return GatewayConfig()


@pytest.fixture
def upstream():
    """A mock upstream that records requests and answers with a prepared response."""

    class Upstream:
        def __init__(self):
            self.requests = []
            self.response = upstream_response(200, content=b"upstream body")
            self.error = None

        def __call__(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            if self.error is not None:
                raise self.error
            return self.response

    return Upstream()


@pytest.fixture
def handler(config, upstream):
    return ForwardHandler(config, transport=httpx.MockTransport(upstream))


class TestValidateTargetUrl:
    def test_absolute_url(self):
        assert validate_target_url(TARGET_URL) == TARGET_URL

    def test_missing_url(self):
        with pytest.raises(ForwardMetadataError, match="Missing x-url"):
            validate_target_url(None)

    def test_relative_url(self):
        with pytest.raises(ForwardMetadataError, match="Invalid URL"):
            validate_target_url("/api/data")

    def test_scheme_without_host(self):
        with pytest.raises(ForwardMetadataError):
            validate_target_url("https://")


class TestParseForwardHeaders:
    def test_object_of_strings(self):
        result = parse_forward_headers('{"accept": "text/html", "x-token": "abc"}')
        assert result == {"accept": "text/html", "x-token": "abc"}

    def test_scalars_rendered_as_json_text(self):
        result = parse_forward_headers('{"dnt": 1, "x-flag": true}')
        assert result == {"dnt": "1", "x-flag": "true"}

    def test_preserves_order(self):
        result = parse_forward_headers('{"b": "2", "a": "1", "c": "3"}')
        assert list(result) == ["b", "a", "c"]

    def test_missing_header(self):
        with pytest.raises(ForwardMetadataError, match="Missing x-headers"):
            parse_forward_headers(None)

    def test_empty_string_is_not_tolerated(self):
        with pytest.raises(ForwardMetadataError, match="Invalid x-headers JSON"):
            parse_forward_headers("")

    def test_malformed_json(self):
        with pytest.raises(ForwardMetadataError, match="Invalid x-headers JSON"):
            parse_forward_headers("{not json")

    def test_array_rejected(self):
        with pytest.raises(ForwardMetadataError, match="must be a JSON object"):
            parse_forward_headers('["accept", "text/html"]')

    def test_nested_value_rejected(self):
        with pytest.raises(ForwardMetadataError, match="must be a scalar"):
            parse_forward_headers('{"accept": {"type": "text/html"}}')


class TestSanitizeResponseHeaders:
    def test_caching_headers_removed(self):
        headers = httpx.Headers(
            {
                "age": "30",
                "cache-control": "max-age=3600",
                "expires": "Wed, 21 Oct 2026 07:28:00 GMT",
                "content-type": "text/plain",
            }
        )

        result = sanitize_response_headers(headers)

        assert ("content-type", "text/plain") in result
        assert ("cache-control", "no-cache") in result
        names = [name for name, _ in result]
        assert "age" not in names
        assert "expires" not in names
        assert names.count("cache-control") == 1

    def test_mixed_case_variants_removed(self):
        headers = httpx.Headers(
            [("Age", "1"), ("Cache-Control", "public"), ("EXPIRES", "0")]
        )

        result = sanitize_response_headers(headers)

        assert result == [("cache-control", "no-cache")]

    def test_repeated_headers_kept(self):
        headers = httpx.Headers([("set-cookie", "a=1"), ("set-cookie", "b=2")])

        result = sanitize_response_headers(headers)

        assert ("set-cookie", "a=1") in result
        assert ("set-cookie", "b=2") in result

    def test_hop_by_hop_headers_removed(self):
        headers = httpx.Headers(
            {"connection": "keep-alive", "transfer-encoding": "chunked", "x-id": "7"}
        )

        result = sanitize_response_headers(headers)

        assert result == [("x-id", "7"), ("cache-control", "no-cache")]


class TestForwardRequest:
    @pytest.mark.asyncio
    async def test_post_body_buffered(self):
        request = make_request("POST", forward_headers(), body=b'{"name": "test"}')

        result = await ForwardRequest.from_request(request)

        assert result.method == "POST"
        assert result.target_url == TARGET_URL
        assert result.body == b'{"name": "test"}'

    @pytest.mark.asyncio
    async def test_get_body_ignored(self):
        request = make_request("GET", forward_headers(), body=b"ignored")

        result = await ForwardRequest.from_request(request)

        assert result.body is None


class TestForwardHandler:
    @pytest.mark.asyncio
    async def test_successful_get(self, handler, upstream):
        upstream.response = upstream_response(
            200, headers={"content-type": "text/plain"}, content=b"Hello, World!"
        )

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.status_code == 200
        assert await read_body(response) == b"Hello, World!"
        assert str(upstream.requests[0].url) == TARGET_URL
        assert upstream.requests[0].method == "GET"

    @pytest.mark.asyncio
    async def test_status_mirrors_upstream(self, handler, upstream):
        upstream.response = upstream_response(404, content=b"missing")

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.status_code == 404
        assert await read_body(response) == b"missing"

    @pytest.mark.asyncio
    async def test_supplied_headers_sent_upstream(self, handler, upstream):
        request = make_request(
            "GET",
            forward_headers(headers={"accept": "application/json", "x-api-key": "k1"}),
        )

        await read_body(await handler.handle(request))

        sent = upstream.requests[0].headers
        assert sent["accept"] == "application/json"
        assert sent["x-api-key"] == "k1"
        assert "x-url" not in sent
        assert "x-headers" not in sent

    @pytest.mark.asyncio
    async def test_post_body_forwarded(self, handler, upstream):
        upstream.response = upstream_response(201, content=b'{"id": 123}')
        request = make_request("POST", forward_headers(), body=b'{"name": "test"}')

        response = await handler.handle(request)

        assert response.status_code == 201
        assert upstream.requests[0].method == "POST"
        assert upstream.requests[0].content == b'{"name": "test"}'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["PUT", "DELETE", "PATCH", "OPTIONS"])
    async def test_method_preserved_without_body(self, handler, upstream, method):
        request = make_request(method, forward_headers(), body=b"not forwarded")

        await read_body(await handler.handle(request))

        assert upstream.requests[0].method == method
        assert upstream.requests[0].content == b""

    @pytest.mark.asyncio
    async def test_caching_headers_replaced(self, handler, upstream):
        upstream.response = upstream_response(
            200,
            headers=[
                ("Age", "100"),
                ("Cache-Control", "public, max-age=600"),
                ("Expires", "Thu, 01 Jan 2037 00:00:00 GMT"),
                ("Content-Type", "text/css"),
            ],
            content=b"body {}",
        )

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.headers.getlist("cache-control") == ["no-cache"]
        assert "age" not in response.headers
        assert "expires" not in response.headers
        assert response.headers["content-type"] == "text/css"

    @pytest.mark.asyncio
    async def test_no_cache_added_when_upstream_has_none(self, handler, upstream):
        upstream.response = upstream_response(204)

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.status_code == 204
        assert response.headers["cache-control"] == "no-cache"

    @pytest.mark.asyncio
    async def test_set_cookie_values_kept(self, handler, upstream):
        upstream.response = upstream_response(
            200, headers=[("set-cookie", "a=1"), ("set-cookie", "b=2")]
        )

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.headers.getlist("set-cookie") == ["a=1", "b=2"]

    @pytest.mark.asyncio
    async def test_body_streamed_chunk_by_chunk(self, handler, upstream):
        async def chunks():
            for chunk in (b"first-", b"second-", b"third"):
                yield chunk

        upstream.response = httpx.Response(200, content=chunks())

        response = await handler.handle(make_request("GET", forward_headers()))
        received = [chunk async for chunk in response.body_iterator]
        await response.background()

        assert b"".join(received) == b"first-second-third"
        assert len([chunk for chunk in received if chunk]) == 3

    @pytest.mark.asyncio
    async def test_compressed_body_relayed_raw(self, handler, upstream):
        import gzip

        compressed = gzip.compress(b"compressed payload")
        upstream.response = upstream_response(
            200, headers={"content-encoding": "gzip"}, content=compressed
        )

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.headers["content-encoding"] == "gzip"
        assert await read_body(response) == compressed

    @pytest.mark.asyncio
    async def test_redirects_followed(self, config):
        def redirecting(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return upstream_response(
                    302, headers={"location": "https://upstream.example.com/new"}
                )
            return upstream_response(200, content=b"moved here")

        handler = ForwardHandler(config, transport=httpx.MockTransport(redirecting))
        request = make_request(
            "GET", forward_headers(url="https://upstream.example.com/old")
        )

        response = await handler.handle(request)

        assert response.status_code == 200
        assert await read_body(response) == b"moved here"

    @pytest.mark.asyncio
    async def test_connection_error_returns_500(self, handler, upstream):
        upstream.error = httpx.ConnectError("Connection refused")

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.status_code == 500
        assert response.body == b"Connection refused"

    @pytest.mark.asyncio
    async def test_timeout_returns_500(self, handler, upstream):
        upstream.error = httpx.ReadTimeout("timed out")

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.status_code == 500
        assert response.body == b"timed out"

    @pytest.mark.asyncio
    async def test_error_without_message_has_body(self, handler, upstream):
        upstream.error = httpx.ConnectError("")

        response = await handler.handle(make_request("GET", forward_headers()))

        assert response.status_code == 500
        assert response.body == b"ConnectError"

    @pytest.mark.asyncio
    async def test_malformed_headers_return_500(self, handler, upstream):
        request = make_request(
            "GET", {"x-url": TARGET_URL, "x-headers": "{broken"}
        )

        response = await handler.handle(request)

        assert response.status_code == 500
        assert b"Invalid x-headers JSON" in response.body
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_missing_headers_field_returns_500(self, handler, upstream):
        response = await handler.handle(make_request("GET", {"x-url": TARGET_URL}))

        assert response.status_code == 500
        assert response.body == b"Missing x-headers header"

    @pytest.mark.asyncio
    async def test_missing_url_returns_500(self, handler, upstream):
        response = await handler.handle(make_request("GET", {"x-headers": "{}"}))

        assert response.status_code == 500
        assert response.body == b"Missing x-url header"

    @pytest.mark.asyncio
    async def test_malformed_url_returns_500(self, handler, upstream):
        request = make_request("GET", forward_headers(url="not a url"))

        response = await handler.handle(request)

        assert response.status_code == 500
        assert b"Invalid URL" in response.body
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_unsupported_scheme_returns_500(self, config):
        handler = ForwardHandler(config)
        request = make_request("GET", forward_headers(url="ftp://files.example.com/a"))

        response = await handler.handle(request)

        assert response.status_code == 500
        assert response.body

    @pytest.mark.asyncio
    async def test_post_is_logged(self, handler, caplog):
        caplog.set_level(logging.INFO, logger="uvicorn.error")

        await read_body(
            await handler.handle(make_request("POST", forward_headers(), body=b"x"))
        )

        assert f"[Forward] POST {TARGET_URL}" in caplog.text

    @pytest.mark.asyncio
    async def test_get_is_not_logged(self, handler, caplog):
        caplog.set_level(logging.INFO, logger="uvicorn.error")

        await read_body(await handler.handle(make_request("GET", forward_headers())))

        assert TARGET_URL not in caplog.text

    @pytest.mark.asyncio
    async def test_debug_logs_every_url(self, upstream, caplog):
        caplog.set_level(logging.INFO, logger="uvicorn.error")
        handler = ForwardHandler(
            GatewayConfig(debug=True), transport=httpx.MockTransport(upstream)
        )

        await read_body(await handler.handle(make_request("GET", forward_headers())))

        assert f"[Forward] Handling {TARGET_URL}" in caplog.text
