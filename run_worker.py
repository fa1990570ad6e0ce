#!/usr/bin/env python
"""Standalone billing worker.

Several of these can share one consumer group; give each a distinct
``BILLING_CONSUMER`` name.
"""
import asyncio
import logging
import signal

from config import settings
from services import build_services

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("runmeter.worker")


async def main():
    services = build_services(settings)
    await services.store.initialize()
    await services.worker.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Cooperative: the batch in flight finishes before the loop exits
        loop.add_signal_handler(sig, services.worker.stop)

    logger.info(f"Worker {settings.BILLING_CONSUMER} consuming {settings.EVENT_STREAM_KEY} "
                f"as part of {settings.BILLING_GROUP}")
    await services.worker.wait_stopped()

    await services.event_log.close()
    await services.store.close()
    logger.info("Worker exited")


if __name__ == "__main__":
    asyncio.run(main())
