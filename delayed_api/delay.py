import anyio
import anyio.lowlevel

from delayed_api.cancellation import CancellationToken, Outcome


async def delay(duration_ms: float, token: CancellationToken) -> Outcome:
    """Sleep for ``duration_ms`` or until ``token`` triggers, whichever comes first.

    The deadline lives in a cancel scope, so leaving the scope on either path
    discards the timer.
    """
    if not token.is_active():
        return Outcome.CANCELLED

    if duration_ms <= 0:
        await anyio.lowlevel.checkpoint()
    else:
        with anyio.move_on_after(duration_ms / 1000):
            await token.wait()

    return Outcome.COMPLETED if token.is_active() else Outcome.CANCELLED
