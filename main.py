"""
Main entry point for the changewatch service.

Set CHANGEWATCH_SCHEDULER_MODE=disabled to run every loop once and exit.
"""

import asyncio
import logging
import signal

from dotenv import load_dotenv

from changewatch.config import load_settings
from changewatch.orchestrator import Orchestrator


async def main():
    """Run the pipeline until SIGINT/SIGTERM."""
    load_dotenv()
    settings = load_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )
    logger = logging.getLogger(__name__)

    orchestrator = Orchestrator(settings)

    if settings.scheduler_mode == "disabled":
        logger.info("Running all loops once...")
        try:
            summary = await orchestrator.run_once()
            logger.info(f"Done: {summary}")
        finally:
            await orchestrator.stop()
        return

    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    try:
        await orchestrator.start()
        logger.info(
            f"changewatch running (watch poll {settings.schedule_poll_seconds}s, "
            f"delivery poll {settings.delivery_poll_seconds}s)"
        )
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await orchestrator.stop()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
