import contextlib
import logging
from typing import Dict, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route

from delayed_api.models import Mode
from delayed_api.responses import SignalResponse, StreamingDelayResponse
from delayed_api.strategies import (
    ChunkedStrategy,
    HeartbeatStrategy,
    SignalStrategy,
    Strategy,
    StreamStrategy,
)

logger = logging.getLogger(__name__)

DEFAULT_MODE = Mode.SIGNAL
DEFAULT_DURATION_MS = 5000


def build_response(
    strategy: Strategy, duration_ms: int, send_timeout: Optional[float] = None
) -> Response:
    if strategy.mode is Mode.SIGNAL:
        return SignalResponse(strategy, duration_ms)
    return StreamingDelayResponse(strategy, duration_ms, send_timeout=send_timeout)


def create_app(
    *,
    stream_interval_ms: Optional[int] = None,
    chunked_interval_ms: Optional[int] = None,
    heartbeat_interval_ms: Optional[int] = None,
    send_timeout: Optional[float] = None,
    debug: bool = False,
) -> Starlette:
    """Build the mock API. Interval overrides exist mostly for tests and demos."""
    strategies: Dict[Mode, Strategy] = {
        Mode.SIGNAL: SignalStrategy(),
        Mode.STREAM: StreamStrategy(stream_interval_ms),
        Mode.HEARTBEAT: HeartbeatStrategy(heartbeat_interval_ms),
        Mode.CHUNKED: ChunkedStrategy(chunked_interval_ms),
    }

    async def mock(request: Request) -> Response:
        mode_param = request.query_params.get("mode") or DEFAULT_MODE.value
        duration_param = request.query_params.get("duration") or str(DEFAULT_DURATION_MS)

        logger.info(f"Starting {mode_param} mode request for {duration_param}ms")

        try:
            mode = Mode(mode_param)
        except ValueError:
            return PlainTextResponse("Invalid mode", status_code=400)
        try:
            duration_ms = int(duration_param)
        except ValueError:
            return PlainTextResponse("Invalid duration", status_code=400)

        try:
            return build_response(strategies[mode], duration_ms, send_timeout)
        except Exception:
            logger.exception("API Error")
            return PlainTextResponse("Internal server error", status_code=500)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        logger.debug("Starting up")
        yield
        logger.debug("Shutting down")

    routes = [
        Route("/mock", endpoint=mock),
        Route("/api/mock", endpoint=mock),
    ]
    return Starlette(debug=debug, routes=routes, lifespan=lifespan)


app = create_app()
