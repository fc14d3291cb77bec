import logging
from typing import Awaitable, Callable, Mapping, Optional

import anyio
from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders
from starlette.responses import PlainTextResponse, Response
from starlette.types import Receive, Scope, Send

from delayed_api.cancellation import CancellationToken, Outcome
from delayed_api.models import HTTP_499_CLIENT_CLOSED_REQUEST
from delayed_api.strategies import Strategy

logger = logging.getLogger(__name__)


class DelayedResponse(Response):
    """
    Base for responses that run a strategy for ``duration_ms`` and stop early
    when the client goes away.

    The per-request token is triggered by the transport's ``http.disconnect``.
    """

    def __init__(
        self,
        strategy: Strategy,
        duration_ms: int,
        status_code: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        background: Optional[BackgroundTask] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.strategy = strategy
        self.duration_ms = duration_ms
        self.status_code = status_code
        self.media_type = strategy.media_type
        self.background = background
        self.token = CancellationToken() if token is None else token

        _headers = MutableHeaders()
        _headers.update(strategy.headers)
        if headers is not None:
            _headers.update(headers)
        self.init_headers(_headers)

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        """Watch for a disconnect message from the client."""
        while self.token.is_active():
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Got event: http.disconnect. Stop %s mode.", self.strategy.mode.value)
                self.token.trigger()
                break


class SignalResponse(DelayedResponse):
    """Single JSON body, ``499`` if the client left before the delay finished."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        body = bytearray()

        async def emit(chunk: bytes) -> bool:
            body.extend(chunk)
            return True

        async with anyio.create_task_group() as task_group:
            task_group.start_soon(self._listen_for_disconnect, receive)
            outcome = await self.strategy.run(emit, self.token, self.duration_ms)
            task_group.cancel_scope.cancel()

        response: Response
        if outcome is Outcome.COMPLETED:
            response = Response(
                bytes(body),
                status_code=self.status_code,
                headers=dict(self.headers),
                media_type=self.media_type,
                background=self.background,
            )
        elif outcome is Outcome.CANCELLED:
            response = PlainTextResponse(
                "Request was aborted", status_code=HTTP_499_CLIENT_CLOSED_REQUEST
            )
        else:
            response = PlainTextResponse("Internal server error", status_code=500)
        await response(scope, receive, send)


class StreamingDelayResponse(DelayedResponse):
    """
    Streams the strategy's units as they are produced.

    Writes are serialized by a lock; a write that fails, times out or comes
    after the token triggered counts as a disconnect.
    """

    def __init__(
        self,
        strategy: Strategy,
        duration_ms: int,
        status_code: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        background: Optional[BackgroundTask] = None,
        token: Optional[CancellationToken] = None,
        send_timeout: Optional[float] = None,
    ) -> None:
        super().__init__(strategy, duration_ms, status_code, headers, background, token)
        self.send_timeout = send_timeout
        self.outcome: Optional[Outcome] = None
        # Heartbeat and progress writes must not interleave
        self._send_lock = anyio.Lock()

    async def _emit(self, send: Send, chunk: bytes) -> bool:
        async with self._send_lock:
            if not self.token.is_active():
                return False

            logger.debug("chunk: %s", chunk)
            try:
                with anyio.move_on_after(self.send_timeout) as cancel_scope:
                    await send(
                        {"type": "http.response.body", "body": chunk, "more_body": True}
                    )
            except OSError as e:
                logger.debug("Write failed, client went away: %s", e)
                self.token.trigger()
                return False

            if cancel_scope.cancel_called:
                logger.debug("Send timed out after %ss", self.send_timeout)
                self.token.trigger()
                return False
            return True

    async def _stream_response(self, send: Send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )

        try:
            self.outcome = await self.strategy.run(
                lambda chunk: self._emit(send, chunk), self.token, self.duration_ms
            )
        finally:
            # The closing frame must go out even when we are being cancelled
            with anyio.CancelScope(shield=True):
                async with self._send_lock:
                    try:
                        await send(
                            {"type": "http.response.body", "body": b"", "more_body": False}
                        )
                    except OSError:
                        logger.debug("Client gone before closing frame")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        async with anyio.create_task_group() as task_group:

            async def cancel_on_finish(coro: Callable[[], Awaitable[None]]):
                await coro()
                task_group.cancel_scope.cancel()

            task_group.start_soon(cancel_on_finish, lambda: self._stream_response(send))
            task_group.start_soon(self._listen_for_disconnect, receive)

        if self.background is not None:
            await self.background()
