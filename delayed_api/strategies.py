"""Disconnection-detection strategies.

Each strategy simulates ``duration_ms`` of work and writes its units through
``emit``, an async callable returning ``False`` once the peer is gone. The
caller owns the token; strategies only observe it.
"""
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional

import anyio

from delayed_api.cancellation import CancellationToken, Outcome
from delayed_api.delay import delay
from delayed_api.event import ServerSentEvent, compact_json, ndjson_line
from delayed_api.models import Mode, utc_timestamp

logger = logging.getLogger(__name__)

Emit = Callable[[bytes], Awaitable[bool]]


@dataclass(frozen=True)
class Tick:
    wait_ms: int
    elapsed_ms: int
    progress: int


def percent(elapsed_ms: float, total_ms: float) -> int:
    """Rounded share of ``total_ms`` covered by ``elapsed_ms``, clamped to 0..100."""
    if total_ms <= 0:
        return 100
    value = math.floor(elapsed_ms * 100 / total_ms + 0.5)
    return max(0, min(100, value))


def iter_ticks(total_ms: int, interval_ms: int) -> Iterator[Tick]:
    """Split ``total_ms`` into ticks of ``interval_ms``; the last one is shortened to land on the total."""
    if interval_ms <= 0:
        raise ValueError("interval must be greater than 0")
    elapsed = 0
    while elapsed < total_ms:
        wait = min(interval_ms, total_ms - elapsed)
        elapsed += wait
        yield Tick(wait_ms=wait, elapsed_ms=elapsed, progress=percent(elapsed, total_ms))


class Strategy(ABC):
    mode: Mode
    media_type: str = "application/x-ndjson"
    headers: Mapping[str, str] = MappingProxyType({})

    COMPLETION_MESSAGE: str
    DISCRIMINATOR: Optional[str] = None

    @property
    def name(self) -> str:
        return self.mode.value.capitalize()

    async def run(self, emit: Emit, token: CancellationToken, duration_ms: int) -> Outcome:
        logger.info("%s mode: Starting...", self.name)
        try:
            outcome = await self._run(emit, token, duration_ms)
        except Exception:
            logger.exception("%s mode error", self.name)
            return Outcome.FAILED

        if outcome is Outcome.COMPLETED:
            logger.info("%s mode: Completed", self.name)
        else:
            logger.info("%s mode: Request was aborted", self.name)
        return outcome

    @abstractmethod
    async def _run(self, emit: Emit, token: CancellationToken, duration_ms: int) -> Outcome:
        pass

    @abstractmethod
    def encode(self, unit: Dict[str, Any]) -> bytes:
        pass

    def completion_unit(self, duration_ms: int) -> Dict[str, Any]:
        unit: Dict[str, Any] = {}
        if self.DISCRIMINATOR is not None:
            unit[self.DISCRIMINATOR] = "complete"
        unit.update(
            mode=self.mode.value,
            message=self.COMPLETION_MESSAGE.format(duration=duration_ms),
            timestamp=utc_timestamp(),
            duration=duration_ms,
        )
        return unit


class SignalStrategy(Strategy):
    """One interruptible wait for the whole duration, answered with a single JSON body."""

    mode = Mode.SIGNAL
    media_type = "application/json"
    COMPLETION_MESSAGE = "Completed after {duration}ms using AbortSignal"

    def encode(self, unit: Dict[str, Any]) -> bytes:
        return compact_json(unit).encode("utf-8")

    async def _run(self, emit: Emit, token: CancellationToken, duration_ms: int) -> Outcome:
        logger.debug("Signal mode: Starting delay...")
        if await delay(duration_ms, token) is Outcome.CANCELLED:
            return Outcome.CANCELLED

        logger.debug("Signal mode: Delay completed")
        await emit(self.encode(self.completion_unit(duration_ms)))
        return Outcome.COMPLETED


class TickingStrategy(Strategy):
    """Start unit, one progress unit per tick, completion unit.

    A failed write ends the loop without a completion unit.
    """

    DEFAULT_INTERVAL_MS = 1000

    def __init__(self, interval_ms: Optional[int] = None) -> None:
        self.interval_ms = self.DEFAULT_INTERVAL_MS if interval_ms is None else interval_ms
        if self.interval_ms <= 0:
            raise ValueError("interval must be greater than 0")

    def encode(self, unit: Dict[str, Any]) -> bytes:
        return ndjson_line(unit)

    def tick_interval(self, duration_ms: int) -> int:
        return self.interval_ms

    @abstractmethod
    def start_unit(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def progress_unit(self, tick: Tick, duration_ms: int) -> Dict[str, Any]:
        pass

    async def _run(self, emit: Emit, token: CancellationToken, duration_ms: int) -> Outcome:
        if not await emit(self.encode(self.start_unit())):
            return Outcome.CANCELLED

        for tick in iter_ticks(duration_ms, self.tick_interval(duration_ms)):
            if await delay(tick.wait_ms, token) is Outcome.CANCELLED:
                return Outcome.CANCELLED
            if not await emit(self.encode(self.progress_unit(tick, duration_ms))):
                logger.info("%s mode: Client disconnected during write", self.name)
                return Outcome.CANCELLED

        if not await emit(self.encode(self.completion_unit(duration_ms))):
            return Outcome.CANCELLED
        return Outcome.COMPLETED


class StreamStrategy(TickingStrategy):
    """Progress every ``min(interval, duration / 5)`` milliseconds."""

    mode = Mode.STREAM
    headers = MappingProxyType({"Cache-Control": "no-cache", "Connection": "keep-alive"})
    COMPLETION_MESSAGE = "Completed after {duration}ms using streaming"
    DISCRIMINATOR = "type"

    def tick_interval(self, duration_ms: int) -> int:
        # Update 5 times or every interval, whichever is more often
        return max(1, min(self.interval_ms, duration_ms // 5))

    def start_unit(self) -> Dict[str, Any]:
        return {
            "type": "start",
            "message": "Starting delayed operation...",
            "timestamp": utc_timestamp(),
        }

    def progress_unit(self, tick: Tick, duration_ms: int) -> Dict[str, Any]:
        return {
            "type": "progress",
            "progress": tick.progress,
            "elapsed": tick.elapsed_ms,
            "duration": duration_ms,
            "timestamp": utc_timestamp(),
        }


class ChunkedStrategy(TickingStrategy):
    """Small compact chunks on a fixed, finer interval."""

    mode = Mode.CHUNKED
    DEFAULT_INTERVAL_MS = 500
    COMPLETION_MESSAGE = "Completed after {duration}ms using chunked response"
    DISCRIMINATOR = "status"

    def start_unit(self) -> Dict[str, Any]:
        return {"status": "starting", "message": "Beginning chunked response..."}

    def progress_unit(self, tick: Tick, duration_ms: int) -> Dict[str, Any]:
        return {"status": "progress", "progress": tick.progress, "elapsed": tick.elapsed_ms}


class HeartbeatStrategy(Strategy):
    """Whole-duration wait with an independent heartbeat emitter.

    Both tasks share one operation token: the wait triggers it on completion,
    a failed heartbeat write triggers it on disconnect, and either way both
    tasks stop before the completion unit is written.
    """

    mode = Mode.HEARTBEAT
    media_type = "text/event-stream"
    headers = MappingProxyType(
        {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )
    COMPLETION_MESSAGE = "Completed after {duration}ms with heartbeat monitoring"
    DISCRIMINATOR = "type"

    HEARTBEAT_INTERVAL_MS = 1000

    def __init__(self, heartbeat_interval_ms: Optional[int] = None) -> None:
        self.heartbeat_interval_ms = (
            self.HEARTBEAT_INTERVAL_MS
            if heartbeat_interval_ms is None
            else heartbeat_interval_ms
        )
        if self.heartbeat_interval_ms <= 0:
            raise ValueError("heartbeat interval must be greater than 0")

    def encode(self, unit: Dict[str, Any]) -> bytes:
        return ServerSentEvent(unit).encode()

    async def _run(self, emit: Emit, token: CancellationToken, duration_ms: int) -> Outcome:
        start = {
            "type": "start",
            "message": "Starting with heartbeat monitoring...",
            "timestamp": utc_timestamp(),
        }
        if not await emit(self.encode(start)):
            return Outcome.CANCELLED

        operation = token.link()
        async with anyio.create_task_group() as task_group:
            task_group.start_soon(self._emit_heartbeats, emit, operation)
            outcome = await delay(duration_ms, operation)
            operation.trigger()

        if outcome is Outcome.CANCELLED:
            return Outcome.CANCELLED
        if not await emit(self.encode(self.completion_unit(duration_ms))):
            return Outcome.CANCELLED
        return Outcome.COMPLETED

    async def _emit_heartbeats(self, emit: Emit, operation: CancellationToken) -> None:
        while await delay(self.heartbeat_interval_ms, operation) is Outcome.COMPLETED:
            heartbeat = {"type": "heartbeat", "timestamp": utc_timestamp()}
            if not await emit(self.encode(heartbeat)):
                logger.info("Heartbeat mode: Client disconnected during heartbeat")
                operation.trigger()
                return


STRATEGIES = {
    Mode.SIGNAL: SignalStrategy,
    Mode.STREAM: StreamStrategy,
    Mode.HEARTBEAT: HeartbeatStrategy,
    Mode.CHUNKED: ChunkedStrategy,
}
