"""Incremental decoders for the two streaming wire formats.

A parser belongs to one operation: once closed it refuses more input.
"""
import codecs
import json
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from delayed_api.models import CompletionEvent, Event, HeartbeatEvent, ProgressEvent

logger = logging.getLogger(__name__)

_LINE_SEP_EXPR = re.compile(r"\r\n|\r|\n")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name}")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"number out of range {text}")
    return value


def loads(text: str) -> Any:
    """``json.loads`` that refuses Infinity, NaN and floats overflowing to infinity."""
    return json.loads(text, parse_constant=_reject_constant, parse_float=_finite_float)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def progress_event(unit: Dict[str, Any]) -> ProgressEvent:
    value = _as_number(unit.get("progress")) or 0
    return ProgressEvent(
        percent_complete=max(0, min(100, int(value))),
        elapsed_ms=_as_number(unit.get("elapsed")),
        total_ms=_as_number(unit.get("duration")),
    )


def completion_event(unit: Dict[str, Any]) -> CompletionEvent:
    return CompletionEvent(
        mode=unit.get("mode"),
        message=unit.get("message"),
        duration_ms=_as_number(unit.get("duration")),
        timestamp=unit.get("timestamp"),
        payload=unit,
    )


class LineParser(ABC):
    """Buffers decoded text until a full line is available."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, data: bytes) -> List[Event]:
        if self._closed:
            raise RuntimeError("parser is closed, start a new operation")
        self._buffer += self._decoder.decode(data)
        # A trailing "\r" may be the first half of "\r\n"
        if self._buffer.endswith("\r"):
            text, self._buffer = self._buffer[:-1], "\r"
        else:
            text, self._buffer = self._buffer, ""
        lines = _LINE_SEP_EXPR.split(text)
        self._buffer = lines.pop() + self._buffer
        return self._parse_lines(lines)

    def close(self) -> List[Event]:
        """Flush whatever is left once the stream has ended."""
        if self._closed:
            return []
        self._closed = True
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines(_LINE_SEP_EXPR.split(rest))

    def _parse_lines(self, lines: List[str]) -> List[Event]:
        events = []
        for line in lines:
            if not line.strip():
                continue
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
        return events

    @abstractmethod
    def parse_line(self, line: str) -> Optional[Event]:
        pass

    async def iter_events(
        self, chunks: AsyncIterator[bytes], is_live: Callable[[], bool]
    ) -> AsyncIterator[Event]:
        """Lazily decode ``chunks``; stop reading as soon as ``is_live()`` is false."""
        try:
            async for chunk in chunks:
                if not is_live():
                    return
                for event in self.feed(chunk):
                    if not is_live():
                        return
                    yield event
            if is_live():
                for event in self.close():
                    yield event
        finally:
            self._closed = True
            if hasattr(chunks, "aclose"):
                await chunks.aclose()


class NDJSONParser(LineParser):
    """One JSON object per line, tagged by ``status`` or ``type``."""

    def parse_line(self, line: str) -> Optional[Event]:
        try:
            unit = loads(line)
        except ValueError:
            logger.debug("Skipping malformed line: %r", line)
            return None
        if not isinstance(unit, dict):
            return None

        kind = unit.get("status") or unit.get("type")
        if kind == "progress":
            return progress_event(unit)
        if kind == "complete":
            return completion_event(unit)
        return None


class SSEParser(LineParser):
    """``data:`` lines of a Server-Sent Events stream, tagged by ``type``."""

    TAG_DATA = "data:"

    def parse_line(self, line: str) -> Optional[Event]:
        if not line.startswith(self.TAG_DATA):
            return None
        data = line[len(self.TAG_DATA):]
        if data.startswith(" "):
            data = data[1:]

        try:
            unit = loads(data)
        except ValueError:
            logger.debug("Skipping malformed frame: %r", line)
            return None
        if not isinstance(unit, dict):
            return None

        kind = unit.get("type")
        if kind == "progress":
            return progress_event(unit)
        if kind == "complete":
            return completion_event(unit)
        if kind == "heartbeat":
            return HeartbeatEvent(timestamp=unit.get("timestamp"))
        return None
