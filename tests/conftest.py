import logging
from typing import Any, Dict, List

import httpx
import pytest
from asgi_lifespan import LifespanManager
from starlette.testclient import TestClient

from delayed_api.app import create_app
from delayed_api.cancellation import Outcome
from tests.helpers import ListSink

_log = logging.getLogger(__name__)
log_fmt = r"%(asctime)-15s %(levelname)s %(name)s %(funcName)s:%(lineno)d %(message)s"
datefmt = "%Y-%m-%d %H:%M:%S"
logging.basicConfig(format=log_fmt, level=logging.DEBUG, datefmt=datefmt)

logging.getLogger("httpx").setLevel(logging.INFO)
logging.getLogger("httpcore").setLevel(logging.INFO)


@pytest.fixture
def anyio_backend():
    """Exclude trio from tests"""
    return "asyncio"


@pytest.fixture
def sink():
    return ListSink()


@pytest.fixture
def instant_delay(monkeypatch):
    """Make every tick of the strategies finish immediately, recording requested waits."""
    waits: List[float] = []

    async def fake_delay(duration_ms, token):
        waits.append(duration_ms)
        return Outcome.COMPLETED if token.is_active() else Outcome.CANCELLED

    monkeypatch.setattr("delayed_api.strategies.delay", fake_delay)
    return waits


@pytest.fixture
def fast_app_options() -> Dict[str, Any]:
    return dict(stream_interval_ms=20, chunked_interval_ms=20, heartbeat_interval_ms=20)


@pytest.fixture
async def app(fast_app_options):
    app = create_app(**fast_app_options)
    async with LifespanManager(app):
        _log.info("We're in!")
        yield app
        _log.info("We're out!")


@pytest.fixture
async def httpx_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://localhost:8000") as client:
        _log.info("Yielding Client")
        yield client


@pytest.fixture
def client(fast_app_options):
    with TestClient(app=create_app(**fast_app_options), base_url="http://localhost:8000") as client:
        yield client
