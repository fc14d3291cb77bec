from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from delayed_api.cancellation import Outcome


# Non-standard "client closed request" status, kept for wire compatibility.
HTTP_499_CLIENT_CLOSED_REQUEST = 499


class Mode(str, Enum):
    SIGNAL = "signal"
    STREAM = "stream"
    HEARTBEAT = "heartbeat"
    CHUNKED = "chunked"


class ErrorKind(str, Enum):
    CANCELLED = "cancelled"
    SERVER_ABORTED = "server_aborted"
    MALFORMED_UNIT = "malformed_unit"
    TRANSPORT = "transport"
    SUPERSEDED = "superseded"


class Status(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. ``2024-01-01T00:00:00.000Z``."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ProgressEvent:
    percent_complete: int
    elapsed_ms: Optional[float] = None
    total_ms: Optional[float] = None


@dataclass(frozen=True)
class CompletionEvent:
    mode: Optional[str]
    message: Optional[str]
    duration_ms: Optional[float]
    timestamp: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HeartbeatEvent:
    timestamp: Optional[str] = None


Event = Union[ProgressEvent, CompletionEvent, HeartbeatEvent]


@dataclass(frozen=True)
class OperationOutcome:
    outcome: Outcome
    result: Optional[Dict[str, Any]] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def completed(cls, result: Dict[str, Any]) -> "OperationOutcome":
        return cls(Outcome.COMPLETED, result=result)

    @classmethod
    def cancelled(cls, error: ErrorKind = ErrorKind.CANCELLED) -> "OperationOutcome":
        return cls(Outcome.CANCELLED, error=error)

    @classmethod
    def failed(cls, error: ErrorKind, message: str) -> "OperationOutcome":
        return cls(Outcome.FAILED, error=error, message=message)


@dataclass
class RequestState:
    """What a UI would render for the current request."""

    status: Status = Status.IDLE
    mode: Optional[Mode] = None
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    heartbeats: int = 0
