from typing import Any, Dict, List, Optional

import anyio


class ListSink:
    """Collects emitted chunks; starts refusing writes after ``fail_after`` of them."""

    def __init__(self, fail_after: int = -1) -> None:
        self.chunks: List[bytes] = []
        self.fail_after = fail_after

    async def __call__(self, chunk: bytes) -> bool:
        if 0 <= self.fail_after <= len(self.chunks):
            return False
        self.chunks.append(chunk)
        return True

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)


def make_receive(disconnect_after: Optional[float] = None):
    """ASGI receive: the (empty) request body, then a disconnect after ``disconnect_after`` seconds."""
    request_sent = False

    async def receive() -> Dict[str, Any]:
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await anyio.sleep(float("inf") if disconnect_after is None else disconnect_after)
        return {"type": "http.disconnect"}

    return receive


class RecordingSend:
    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def __call__(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)

    @property
    def start(self) -> Dict[str, Any]:
        return next(m for m in self.messages if m["type"] == "http.response.start")

    @property
    def headers(self) -> Dict[str, str]:
        return {k.decode(): v.decode() for k, v in self.start["headers"]}

    @property
    def body(self) -> bytes:
        return b"".join(
            m.get("body", b"") for m in self.messages if m["type"] == "http.response.body"
        )

    @property
    def closing_frames(self) -> List[Dict[str, Any]]:
        return [
            m
            for m in self.messages
            if m["type"] == "http.response.body" and not m.get("more_body", False)
        ]
