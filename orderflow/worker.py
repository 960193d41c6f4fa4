"""
Standalone worker process: runs the worker pool without the HTTP surface.

    python -m orderflow.worker

SIGTERM/SIGINT stop dequeuing, drain in-flight jobs for up to
ORDERFLOW_SHUTDOWN_DRAIN_S, then release whatever is still running back to the
queue. Progress is published to the bus; this process never subscribes.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

from orderflow.common.config import Settings
from orderflow.common.logging import init_structured_logging, log_event
from orderflow.runtime import open_runtime

logger = logging.getLogger(__name__)


def install_shutdown_handlers(stop: asyncio.Event) -> list[signal.Signals]:
    """Set `stop` on SIGTERM/SIGINT. Returns the signals actually hooked."""
    loop = asyncio.get_running_loop()
    hooked: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform / not the main thread.
            continue
        hooked.append(sig)
    return hooked


async def run_worker(settings: Settings, *, stop: Optional[asyncio.Event] = None) -> None:
    stop = stop or asyncio.Event()
    hooked = install_shutdown_handlers(stop)
    try:
        async with open_runtime(settings, run_workers=True, receive_updates=False):
            log_event(logger, "worker.ready", concurrency=settings.worker_concurrency)
            await stop.wait()
            log_event(logger, "worker.shutdown_requested")
    finally:
        loop = asyncio.get_running_loop()
        for sig in hooked:
            loop.remove_signal_handler(sig)


def main() -> int:
    settings = Settings.from_env()
    init_structured_logging(service=settings.service_name, env=settings.env, level=settings.log_level)
    asyncio.run(run_worker(settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
