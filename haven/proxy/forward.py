import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from fastapi import Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask

from haven.proxy.errors import ForwardMetadataError
from haven.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from haven.utils.traced_requests import traced_request
from haven.vars import GatewayConfig

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

TARGET_URL_HEADER = "x-url"
TARGET_HEADERS_HEADER = "x-headers"

# Response headers that would let the browser cache the proxied response
CACHE_HEADERS = {"age", "cache-control", "expires"}

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


@dataclass
class ForwardRequest:
    """The outbound request described by an inbound request's x-url and x-headers."""

    method: str
    target_url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None

    @classmethod
    async def from_request(cls, request: Request) -> "ForwardRequest":
        target_url = validate_target_url(request.headers.get(TARGET_URL_HEADER))
        headers = parse_forward_headers(request.headers.get(TARGET_HEADERS_HEADER))
        body = None
        # Only POST bodies are forwarded, and they are buffered whole
        if request.method == "POST":
            body = await request.body()
        return cls(
            method=request.method, target_url=target_url, headers=headers, body=body
        )


def validate_target_url(url: Optional[str]) -> str:
    """Return the URL if it is absolute, raise ForwardMetadataError otherwise."""
    if not url:
        raise ForwardMetadataError(f"Missing {TARGET_URL_HEADER} header")
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ForwardMetadataError(f"Invalid URL: {url}")
    return url


def parse_forward_headers(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse the JSON header object sent in x-headers.

    Strings are kept as they are and other scalars are rendered as JSON text
    (true, 12, null). Arrays and nested objects are rejected.
    """
    if raw is None:
        raise ForwardMetadataError(f"Missing {TARGET_HEADERS_HEADER} header")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ForwardMetadataError(f"Invalid {TARGET_HEADERS_HEADER} JSON: {e}") from e

    if not isinstance(value, dict):
        raise ForwardMetadataError(
            f"{TARGET_HEADERS_HEADER} must be a JSON object, got {type(value).__name__}"
        )

    headers = {}
    for name, header_value in value.items():
        if isinstance(header_value, (dict, list)):
            raise ForwardMetadataError(
                f"{TARGET_HEADERS_HEADER} value for {name!r} must be a scalar"
            )
        headers[name] = (
            header_value if isinstance(header_value, str) else json.dumps(header_value)
        )
    return headers


def sanitize_response_headers(headers: httpx.Headers) -> List[Tuple[str, str]]:
    """
    Copy upstream response headers without caching or hop-by-hop headers.

    Names are compared lower-cased so Cache-Control and cache-control are both
    dropped. Repeated headers such as set-cookie keep every value. A single
    cache-control: no-cache is appended.
    """
    result = []
    for name, value in headers.multi_items():
        name_lower = name.lower()
        if name_lower in CACHE_HEADERS or name_lower in HOP_BY_HOP_HEADERS:
            continue
        result.append((name_lower, value))
    result.append(("cache-control", "no-cache"))
    return result


class ForwardHandler:
    """Forward one inbound request to the URL named in its x-url header."""

    def __init__(
        self,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.forward_timeout),
            # fetch() semantics, the caller sees the final response
            follow_redirects=True,
            transport=self.transport,
        )

    async def handle(self, request: Request) -> Response:
        url = request.headers.get(TARGET_URL_HEADER, "")
        if self.config.debug:
            logger.info(f"[Forward] Handling {url}")

        with traced_request(
            tracer,
            operation="forward_request",
            target_url=url,
            method=request.method,
        ) as span:
            try:
                forward_request = await ForwardRequest.from_request(request)
                if forward_request.method == "POST":
                    logger.info(
                        f"[Forward] {forward_request.method} {forward_request.target_url}"
                    )
                upstream, client = await self._send(forward_request)
            except Exception as e:
                log_exception_with_details(logger, "[Forward]", e)
                span.set_attribute("proxy.error", format_exception_message(e))
                return PlainTextResponse(format_exception_message(e), status_code=500)

            span.set_attribute("proxy.status_code", upstream.status_code)
            return self._relay_response(upstream, client)

    async def _send(
        self, forward_request: ForwardRequest
    ) -> Tuple[httpx.Response, httpx.AsyncClient]:
        client = self._client()
        try:
            upstream_request = client.build_request(
                method=forward_request.method,
                url=forward_request.target_url,
                headers=forward_request.headers,
                content=forward_request.body,
            )
            upstream = await client.send(upstream_request, stream=True)
        except BaseException:
            await client.aclose()
            raise
        return upstream, client

    def _relay_response(
        self, upstream: httpx.Response, client: httpx.AsyncClient
    ) -> StreamingResponse:
        async def close_upstream():
            await upstream.aclose()
            await client.aclose()

        # Raw bytes keep content-encoding and content-length truthful
        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(close_upstream),
        )
        for name, value in sanitize_response_headers(upstream.headers):
            response.headers.append(name, value)
        return response
