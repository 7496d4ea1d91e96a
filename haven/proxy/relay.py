"""
WebSocket relay between an inbound client socket and a caller-chosen upstream.

The inbound side is a Starlette WebSocket, the upstream side is a `websockets`
asyncio client connection. Each direction is pumped by its own task; when one
side closes, the other side is closed with the same code.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from fastapi import WebSocket
from fastapi.responses import PlainTextResponse, Response
from opentelemetry import trace
from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from haven.utils.exception_logging import log_exception_with_details
from haven.utils.traced_requests import traced_request
from haven.vars import GatewayConfig

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

NOT_A_WEBSOCKET_BODY = "Not a WS connection"
SUBPROTOCOL_HEADER = "sec-websocket-protocol"
TARGET_URL_PARAM = "url"

NORMAL_CLOSURE = 1000
INTERNAL_ERROR = 1011
# Reserved codes that may be reported but never sent in a close frame
UNSENDABLE_CLOSE_CODES = {1004, 1005, 1006, 1015}

CLIENT = "client"
UPSTREAM = "upstream"

UpstreamConnector = Callable[[str, Sequence[str]], Awaitable[ClientConnection]]


class RelayState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def parse_subprotocols(header: Optional[str]) -> List[str]:
    """Split a sec-websocket-protocol header into the offered subprotocols."""
    if not header:
        return []
    return [p.strip() for p in header.split(",") if p.strip()]


def sendable_close_code(code: Optional[int]) -> int:
    """Map a reported close code onto one that may be sent in a close frame."""
    if code is None or code in UNSENDABLE_CLOSE_CODES:
        return NORMAL_CLOSURE
    if 1000 <= code < 5000:
        return code
    return NORMAL_CLOSURE


async def connect_upstream(url: str, subprotocols: Sequence[str]) -> ClientConnection:
    return await connect(
        url,
        subprotocols=list(subprotocols) or None,
        # Relay frames of any size, as the client sent them
        max_size=None,
    )


class RelaySession:
    """
    One client socket relayed to one upstream socket.

    State moves CONNECTING -> OPEN -> CLOSING -> CLOSED. A failed upstream
    connection ends the session in CLOSED without passing through OPEN.
    """

    def __init__(
        self,
        client: WebSocket,
        target_url: str,
        subprotocols: Sequence[str],
        connector: UpstreamConnector = connect_upstream,
    ):
        self.client = client
        self.target_url = target_url
        self.subprotocols = list(subprotocols)
        self.connector = connector
        self.upstream: Optional[ClientConnection] = None
        self.state = RelayState.CONNECTING
        self.closed_by: Optional[str] = None
        self.close_code: Optional[int] = None
        self.close_reason = ""

    @property
    def subprotocol(self) -> str:
        return self.subprotocols[0] if self.subprotocols else ""

    async def run(self) -> None:
        try:
            self.upstream = await self.connector(self.target_url, self.subprotocols)
        except Exception as e:
            log_exception_with_details(
                logger, f"[Relay] Upstream connection to {self.target_url} failed.", e
            )
            self.state = RelayState.CLOSED
            await self._close_client(INTERNAL_ERROR, "Upstream connection failed")
            return

        self.state = RelayState.OPEN
        pumps = {
            asyncio.create_task(self._client_to_upstream()),
            asyncio.create_task(self._upstream_to_client()),
        }
        try:
            done, pending = await asyncio.wait(
                pumps, return_when=asyncio.FIRST_COMPLETED
            )
            self.state = RelayState.CLOSING
            finished = done.pop()
            if finished.exception() is not None:
                log_exception_with_details(
                    logger, "[Relay] Relay pump failed.", finished.exception()
                )
                self.closed_by = self.closed_by or UPSTREAM
                self.close_code = self.close_code or INTERNAL_ERROR
        finally:
            await self._close_both()
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            self.state = RelayState.CLOSED

        logger.debug(
            f"[Relay] Session for {self.target_url} closed by {self.closed_by} "
            f"with code {self.close_code}"
        )

    def _mark_closed(self, side: str, code: Optional[int], reason: str = "") -> str:
        # First side to close wins, its code is mirrored on the other side
        if self.closed_by is None:
            self.closed_by = side
            self.close_code = code
            self.close_reason = reason or ""
        return side

    async def _client_to_upstream(self) -> str:
        while True:
            message = await self.client.receive()
            if message["type"] == "websocket.disconnect":
                return self._mark_closed(
                    CLIENT, message.get("code", NORMAL_CLOSURE), message.get("reason")
                )
            try:
                if message.get("text") is not None:
                    await self.upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await self.upstream.send(message["bytes"])
            except ConnectionClosed:
                return self._mark_closed(
                    UPSTREAM, self.upstream.close_code, self.upstream.close_reason
                )

    async def _upstream_to_client(self) -> str:
        try:
            async for message in self.upstream:
                try:
                    if isinstance(message, str):
                        await self.client.send_text(message)
                    else:
                        await self.client.send_bytes(message)
                except (WebSocketDisconnect, RuntimeError) as e:
                    code = getattr(e, "code", NORMAL_CLOSURE)
                    return self._mark_closed(CLIENT, code)
        except ConnectionClosed:
            pass
        return self._mark_closed(
            UPSTREAM, self.upstream.close_code, self.upstream.close_reason
        )

    async def _close_both(self) -> None:
        code = sendable_close_code(self.close_code)
        if self.closed_by == CLIENT:
            await self._close_upstream(code, self.close_reason)
            await self._close_client(code, self.close_reason)
        else:
            await self._close_client(code, self.close_reason)
            await self._close_upstream(code, self.close_reason)

    async def _close_upstream(self, code: int, reason: str = "") -> None:
        if self.upstream is None:
            return
        await self.upstream.close(code=code, reason=reason)

    async def _close_client(self, code: int, reason: str = "") -> None:
        if (
            self.client.application_state == WebSocketState.DISCONNECTED
            or self.client.client_state == WebSocketState.DISCONNECTED
        ):
            return
        try:
            await self.client.close(code=code, reason=reason)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"[Relay] Client already gone while closing: {e}")


class RelayHandler:
    """Relay a WebSocket upgrade under the relay prefix to its ?url= target."""

    def __init__(
        self, config: GatewayConfig, connector: UpstreamConnector = connect_upstream
    ):
        self.config = config
        self.connector = connector

    def fallback_response(self) -> Response:
        """Answer for a relay-path request that did not ask for an upgrade."""
        return PlainTextResponse(NOT_A_WEBSOCKET_BODY)

    async def handle(self, websocket: WebSocket) -> Optional[RelaySession]:
        subprotocols = parse_subprotocols(websocket.headers.get(SUBPROTOCOL_HEADER))
        try:
            await websocket.accept(subprotocol=subprotocols[0] if subprotocols else None)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning(f"[Relay] Upgrade failed: {e}")
            return None

        target_url = websocket.query_params.get(TARGET_URL_PARAM, "")
        if self.config.debug:
            logger.info(f"[Relay] Handling WS {target_url}")

        session = RelaySession(websocket, target_url, subprotocols, self.connector)
        with traced_request(
            tracer,
            operation="relay_session",
            target_url=target_url,
            method="WEBSOCKET",
            extra_attrs={"relay.subprotocol": session.subprotocol},
        ) as span:
            await session.run()
            span.set_attribute("relay.closed_by", session.closed_by or "")
            if session.close_code is not None:
                span.set_attribute("relay.close_code", session.close_code)
        return session
