import argparse
import logging
from typing import List, Optional

import anyio
import uvicorn

from delayed_api.client import RequestOrchestrator
from delayed_api.models import Mode, RequestState

_log = logging.getLogger("delayed_api")
log_fmt = r"%(asctime)-15s %(levelname)s %(name)s %(funcName)s:%(lineno)d %(message)s"
datefmt = "%Y-%m-%d %H:%M:%S"


def _print_state(state: RequestState) -> None:
    _log.info(
        "status=%s progress=%s%% heartbeats=%s error=%s result=%s",
        state.status.value,
        state.progress,
        state.heartbeats,
        state.error,
        state.result,
    )


async def call(base_url: str, mode: Mode, duration_ms: int, cancel_after_ms: Optional[int]) -> None:
    async with RequestOrchestrator(base_url, on_change=_print_state) as orchestrator:
        async with anyio.create_task_group() as task_group:
            if cancel_after_ms is not None:

                async def cancel_later() -> None:
                    await anyio.sleep(cancel_after_ms / 1000)
                    orchestrator.cancel()

                task_group.start_soon(cancel_later)

            outcome = await orchestrator.run(mode, duration_ms)
            task_group.cancel_scope.cancel()
    _log.info("Outcome: %s", outcome)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="delayed_api")
    parser.add_argument("--log-level", default="info")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="run the mock API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    request = commands.add_parser("call", help="call the mock API and follow its progress")
    request.add_argument("--base-url", default="http://127.0.0.1:8000")
    request.add_argument("--mode", choices=[m.value for m in Mode], default=Mode.SIGNAL.value)
    request.add_argument("--duration", type=int, default=RequestOrchestrator.DEFAULT_DURATION_MS)
    request.add_argument("--cancel-after", type=int, default=None, metavar="MS")

    args = parser.parse_args(argv)
    logging.basicConfig(format=log_fmt, level=args.log_level.upper(), datefmt=datefmt)

    if args.command == "serve":
        uvicorn.run("delayed_api.app:app", host=args.host, port=args.port, log_level=args.log_level)
    else:
        anyio.run(call, args.base_url, Mode(args.mode), args.duration, args.cancel_after)


if __name__ == "__main__":
    main()
