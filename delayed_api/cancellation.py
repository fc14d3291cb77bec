import logging
from enum import Enum
from typing import Callable, List, Optional

import anyio

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancellationToken:
    """Liveness flag of a single operation.

    Owned by whoever started the operation: the orchestrator on the client
    side, the response on the server side. Once triggered it stays triggered.
    """

    def __init__(self) -> None:
        self._active = True
        self._cleanups: List[Callable[[], None]] = []
        self._event: Optional[anyio.Event] = None

    def is_active(self) -> bool:
        return self._active

    def trigger(self) -> None:
        if not self._active:
            return
        self._active = False

        if self._event is not None:
            self._event.set()

        cleanups, self._cleanups = self._cleanups, []
        for cleanup in cleanups:
            try:
                cleanup()
            except Exception:
                logger.exception("Error in cancellation cleanup")

    def add_cleanup(self, cleanup: Callable[[], None]) -> None:
        """Run ``cleanup`` once when the token triggers, or now if it already has."""
        if self._active:
            self._cleanups.append(cleanup)
        else:
            cleanup()

    def link(self) -> "CancellationToken":
        """Return a child token that is triggered together with this one."""
        child = CancellationToken()
        self.add_cleanup(child.trigger)
        return child

    async def wait(self) -> None:
        # Check if we were triggered before anybody started waiting
        if not self._active:
            return

        if self._event is None:
            self._event = anyio.Event()

        await self._event.wait()
