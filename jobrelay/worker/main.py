"""
Standalone worker process.

Runs a job engine (scheduler, reaper and worker pool) without the HTTP
API. Several worker processes may share one database; each claim is an
atomic conditional update, so no job is dispatched twice.
"""

import asyncio
import logging
import signal

from jobrelay.config import get_settings
from jobrelay.engine import JobEngine
from jobrelay.observability.logging import setup_logging
from jobrelay.observability.metrics import setup_metrics
from jobrelay.observability.tracing import setup_tracing

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the worker until SIGTERM or SIGINT."""
    setup_logging()
    setup_metrics()
    setup_tracing()
    settings = get_settings()

    engine = await JobEngine.create(settings)
    stop_event = asyncio.Event()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await engine.start()
        logger.info(
            "Worker running",
            extra={
                "worker_id": engine.pool.worker_id,
                "concurrency": engine.pool.concurrency,
            },
        )
        await stop_event.wait()
        logger.info("Worker stopping", extra={"worker_id": engine.pool.worker_id})
    finally:
        await engine.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
