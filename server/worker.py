"""Standalone queue worker.

Run alongside the API (with EMBEDDED_WORKER=false there) when jobs should
be processed in a separate process:

    python worker.py

Requires REDIS_ENABLED=true; with the memory backend the worker and the API
would not share a queue.
"""

import asyncio
import signal

from core.container import container
from core.logging import configure_logging, get_logger

settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


async def run() -> None:
    cache = container.cache()
    await cache.startup()
    if not cache.is_redis_available():
        logger.warning("Redis unavailable; this worker only sees jobs queued in-process")

    worker = container.worker()
    sweeper = container.stalled_sweeper()
    await worker.start()
    await sweeper.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    logger.info("Worker process running", queue=settings.queue_name,
                concurrency=settings.worker_concurrency)
    await stop.wait()

    await worker.stop()
    await sweeper.stop()
    await cache.shutdown()
    logger.info("Worker process stopped")


if __name__ == "__main__":
    asyncio.run(run())
