import asyncio
from typing import List, Optional, Sequence

from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import Close

_END = object()


class FakeClientSocket:
    """Stands in for the inbound Starlette WebSocket of a relay session."""

    def __init__(self, headers=None, query_params=None):
        self.headers = headers or {}
        self.query_params = query_params or {}
        self.application_state = WebSocketState.CONNECTING
        self.client_state = WebSocketState.CONNECTING
        self.accepted_subprotocol: Optional[str] = None
        self.sent: List = []
        self.closed_with: Optional[tuple] = None
        self.closed = asyncio.Event()
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def accept(self, subprotocol=None):
        self.accepted_subprotocol = subprotocol
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED

    async def receive(self):
        message = await self._inbox.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, data: str):
        self._check_open()
        self.sent.append(data)

    async def send_bytes(self, data: bytes):
        self._check_open()
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed_with = (code, reason)
        self.application_state = WebSocketState.DISCONNECTED
        self.closed.set()

    def _check_open(self):
        if self.client_state == WebSocketState.DISCONNECTED:
            raise WebSocketDisconnect(code=1006)

    # Test drivers

    def sends_text(self, text: str):
        self._inbox.put_nowait({"type": "websocket.receive", "text": text})

    def sends_bytes(self, data: bytes):
        self._inbox.put_nowait({"type": "websocket.receive", "bytes": data})

    def disconnects(self, code: int = 1000, reason: str = ""):
        self._inbox.put_nowait(
            {"type": "websocket.disconnect", "code": code, "reason": reason}
        )


class FakeUpstream:
    """Stands in for a `websockets` client connection to the upstream."""

    def __init__(self, subprotocol: Optional[str] = None):
        self.subprotocol = subprotocol
        self.sent: List = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.closed = asyncio.Event()
        self._inbox: asyncio.Queue = asyncio.Queue()

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._inbox.get()
        if message is _END:
            raise StopAsyncIteration
        return message

    async def send(self, message):
        if self.closed.is_set():
            raise ConnectionClosedOK(Close(self.close_code, ""), None)
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = ""):
        if self.closed.is_set():
            return
        self.close_code = code
        self.close_reason = reason
        self.closed.set()
        self._inbox.put_nowait(_END)

    # Test drivers

    def sends(self, message):
        self._inbox.put_nowait(message)

    def closes(self, code: int = 1000, reason: str = ""):
        self.close_code = code
        self.close_reason = reason
        self.closed.set()
        self._inbox.put_nowait(_END)


class EchoUpstream(FakeUpstream):
    """An upstream that answers every frame with the same frame."""

    async def send(self, message):
        await super().send(message)
        self.sends(message)


class RecordingConnector:
    """Connector returning a prepared upstream and remembering how it was called."""

    def __init__(self, upstream_factory=FakeUpstream, error: Optional[Exception] = None):
        self.upstream_factory = upstream_factory
        self.error = error
        self.calls: List[tuple] = []
        self.upstreams: List[FakeUpstream] = []

    async def __call__(self, url: str, subprotocols: Sequence[str]):
        self.calls.append((url, list(subprotocols)))
        if self.error is not None:
            raise self.error
        upstream = self.upstream_factory()
        self.upstreams.append(upstream)
        return upstream
