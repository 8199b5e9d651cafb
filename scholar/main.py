"""Outreach worker entry point.

    python -m scholar.main

Sets up logging and schema, starts the campaign scheduler and keeps the
event loop alive for background pipeline tasks until interrupted.
"""

import asyncio
import signal
import sys

from loguru import logger

from . import tasks
from .http_client import close_clients
from .logging_config import setup_logging
from .scheduler import configure_scheduler, scheduler
from .services import mail_sender  # noqa: F401  (subscribes cache eviction)
from .startup import run_startup_migrations


async def run() -> None:
    setup_logging()
    run_startup_migrations()

    configure_scheduler()
    scheduler.start()
    logger.info("Outreach worker started")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    tasks.bind_loop(loop)
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down: stopping scheduler, cancelling {} task(s)", tasks.running())
        scheduler.shutdown(wait=False)
        tasks.unbind_loop()
        tasks.cancel_all()
        await tasks.drain()
        await close_clients()
        logger.info("Outreach worker stopped")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
