"""
Delivery worker — consumes delivery jobs until SIGINT/SIGTERM.

    python -m worker.main
    relay-worker

Shutdown order: stop taking jobs, let in-flight deliveries finish within
queue.shutdown_timeout, then close the channel, queue and store.
"""
from __future__ import annotations

import asyncio
import signal
import structlog
from typing import Optional

from dotenv import load_dotenv

from config.settings import Settings, get_settings
from core.runtime import RelayServices
from utils.log_config import configure_logging

logger = structlog.get_logger()


async def run_worker(
    settings: Settings,
    services: Optional[RelayServices] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run one worker process. Returns after a stop signal (or ``stop_event``) and a clean shutdown."""
    services = services or RelayServices(settings)
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            pass

    try:
        await services.connect(required=True)
        consumer = await services.start_delivery()
        logger.info("delivery_worker_started",
                    consumer=consumer.consumer_name,
                    concurrency=consumer.concurrency,
                    queue_backend=type(services.queue).__name__,
                    channel=services.channel.name)
        stopping = asyncio.create_task(stop_event.wait())
        try:
            done, _ = await asyncio.wait({stopping, consumer.task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopping.cancel()
        if stopping not in done:
            logger.error("delivery_pool_exited")
            raise RuntimeError("delivery worker pool exited before a stop was requested")
        logger.info("delivery_worker_stopping")
    finally:
        await services.shutdown()
        for sig in installed:
            loop.remove_signal_handler(sig)
        logger.info("delivery_worker_stopped")


def main():
    load_dotenv()
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
