"""Client side: issue a delayed request and track its progress.

Only the current operation may touch the shared :class:`RequestState`; a new
``run`` supersedes the previous one and ``cancel`` aborts it on the spot.
"""
import dataclasses
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import anyio
import httpx

from delayed_api.cancellation import CancellationToken, Outcome
from delayed_api.models import (
    HTTP_499_CLIENT_CLOSED_REQUEST,
    CompletionEvent,
    ErrorKind,
    HeartbeatEvent,
    Mode,
    OperationOutcome,
    ProgressEvent,
    RequestState,
    Status,
)
from delayed_api.parsers import LineParser, NDJSONParser, SSEParser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InFlight:
    """Identity and token of one operation, always allocated together."""

    request_id: int
    token: CancellationToken


def parser_for(mode: Mode) -> LineParser:
    if mode is Mode.HEARTBEAT:
        return SSEParser()
    return NDJSONParser()


class RequestOrchestrator:
    DEFAULT_DURATION_MS = 5000
    DEFAULT_PATH = "/mock"

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
        path: str = DEFAULT_PATH,
        on_change: Optional[Callable[[RequestState], None]] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = (
            httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(5.0, read=None))
            if client is None
            else client
        )
        self.path = path
        self.on_change = on_change
        self._state = RequestState()
        self._last_request_id = 0
        self._in_flight: Optional[InFlight] = None

    async def __aenter__(self) -> "RequestOrchestrator":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._in_flight is not None:
            self._in_flight.token.trigger()
        if self._owns_client:
            await self._client.aclose()

    @property
    def state(self) -> RequestState:
        return dataclasses.replace(self._state)

    @property
    def current_request_id(self) -> int:
        return self._last_request_id

    def cancel(self) -> None:
        """Abort the current operation without waiting for the network to notice."""
        in_flight = self._in_flight
        if in_flight is None or not in_flight.token.is_active():
            return
        logger.info("Cancelling request %s", in_flight.request_id)
        in_flight.token.trigger()
        self._update(
            in_flight,
            status=Status.CANCELLED,
            progress=0,
            error="Request cancelled by user",
            error_kind=ErrorKind.CANCELLED,
        )

    async def run(
        self, mode: Union[Mode, str], duration_ms: int = DEFAULT_DURATION_MS
    ) -> OperationOutcome:
        mode = Mode(mode)
        in_flight = self._begin(mode)
        try:
            outcome = await self._perform(in_flight, mode, duration_ms)
        finally:
            if self._is_current(in_flight):
                self._in_flight = None
        logger.info("Request %s finished: %s", in_flight.request_id, outcome.outcome.value)
        return outcome

    def _begin(self, mode: Mode) -> InFlight:
        if self._in_flight is not None:
            logger.debug("Superseding request %s", self._in_flight.request_id)
            self._in_flight.token.trigger()

        self._last_request_id += 1
        in_flight = InFlight(self._last_request_id, CancellationToken())
        self._in_flight = in_flight

        self._state = RequestState(status=Status.LOADING, mode=mode)
        self._notify()
        return in_flight

    def _is_current(self, in_flight: InFlight) -> bool:
        return in_flight.request_id == self._last_request_id

    def _is_live(self, in_flight: InFlight) -> bool:
        return self._is_current(in_flight) and in_flight.token.is_active()

    def _update(self, in_flight: InFlight, **changes: Any) -> bool:
        if not self._is_current(in_flight):
            logger.debug("Request %s superseded, ignoring response", in_flight.request_id)
            return False
        self._state = dataclasses.replace(self._state, **changes)
        self._notify()
        return True

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.state)

    async def _perform(
        self, in_flight: InFlight, mode: Mode, duration_ms: int
    ) -> OperationOutcome:
        token = in_flight.token
        outcome = OperationOutcome.cancelled()

        with anyio.CancelScope() as scope:
            token.add_cleanup(scope.cancel)
            try:
                outcome = await self._request(in_flight, mode, duration_ms)
            except httpx.HTTPError as e:
                outcome = OperationOutcome.failed(ErrorKind.TRANSPORT, str(e) or repr(e))
            except ValueError as e:
                # Body of a signal response was not JSON
                outcome = OperationOutcome.failed(ErrorKind.TRANSPORT, str(e))

        if not self._is_current(in_flight):
            return OperationOutcome.cancelled(ErrorKind.SUPERSEDED)

        if scope.cancelled_caught or not token.is_active():
            if self._state.status is Status.LOADING:
                self._update(
                    in_flight,
                    status=Status.CANCELLED,
                    error="Request was cancelled",
                    error_kind=ErrorKind.CANCELLED,
                )
            if outcome.outcome is not Outcome.COMPLETED:
                outcome = OperationOutcome.cancelled()
            return outcome

        if outcome.outcome is Outcome.FAILED:
            self._update(
                in_flight,
                status=Status.FAILED,
                error=outcome.message,
                error_kind=outcome.error,
            )
        return outcome

    async def _request(
        self, in_flight: InFlight, mode: Mode, duration_ms: int
    ) -> OperationOutcome:
        params = {"mode": mode.value, "duration": str(duration_ms)}
        async with self._client.stream("GET", self.path, params=params) as response:
            if not self._is_live(in_flight):
                return OperationOutcome.cancelled()

            if response.status_code == HTTP_499_CLIENT_CLOSED_REQUEST:
                return OperationOutcome.failed(
                    ErrorKind.SERVER_ABORTED, "Request was cancelled by server"
                )
            if not response.is_success:
                return OperationOutcome.failed(
                    ErrorKind.TRANSPORT, f"HTTP error! status: {response.status_code}"
                )

            if mode is Mode.SIGNAL:
                data = json.loads(await response.aread())
                if not self._is_live(in_flight):
                    return OperationOutcome.cancelled()
                self._update(in_flight, status=Status.SUCCEEDED, progress=100, result=data)
                return OperationOutcome.completed(data)

            return await self._consume(in_flight, parser_for(mode), response)

    async def _consume(
        self, in_flight: InFlight, parser: LineParser, response: httpx.Response
    ) -> OperationOutcome:
        events = parser.iter_events(response.aiter_bytes(), lambda: self._is_live(in_flight))
        try:
            async for event in events:
                if isinstance(event, ProgressEvent):
                    progress = max(self._state.progress, event.percent_complete)
                    self._update(in_flight, progress=progress)
                elif isinstance(event, HeartbeatEvent):
                    self._update(in_flight, heartbeats=self._state.heartbeats + 1)
                elif isinstance(event, CompletionEvent):
                    self._update(
                        in_flight,
                        status=Status.SUCCEEDED,
                        progress=100,
                        result=event.payload,
                    )
                    return OperationOutcome.completed(event.payload)
        finally:
            await events.aclose()

        if not self._is_live(in_flight):
            return OperationOutcome.cancelled()
        return OperationOutcome.failed(
            ErrorKind.TRANSPORT, "Stream ended before the operation completed"
        )
