"""
Kestrel Main Entry Point

Runs the tracker engine as a long-lived service: polls prices, evaluates
alert rules on a timer and shuts down cleanly on SIGINT/SIGTERM.
"""

import asyncio
import signal
import sys
from typing import Optional

from config.settings import get_settings
from core.engine import TrackerEngine
from utils.logger import get_logger, setup_logging

# Initialize logging first
setup_logging()
logger = get_logger("main")


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """
    Set ``stop_event`` on SIGINT or SIGTERM.

    Args:
        stop_event: Event the main loop waits on
    """
    loop = asyncio.get_running_loop()

    def _request_shutdown(signum: int) -> None:
        logger.info(f"Received shutdown signal: {signal.Signals(signum).name}")
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_shutdown, signum)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(signum, lambda s, _frame: loop.call_soon_threadsafe(_request_shutdown, s))


async def shutdown_application(engine: Optional[TrackerEngine]) -> None:
    """
    Gracefully shutdown the engine and release its resources.
    """
    if engine is None:
        return

    logger.info("Starting graceful shutdown...")
    try:
        if engine.is_running():
            await engine.stop()
    finally:
        await engine.close()
    logger.info("Graceful shutdown completed")


async def main_async() -> int:
    """
    Main asynchronous application entry point.

    Returns:
        int: Process exit status
    """
    settings = get_settings()
    logger.info(f"Starting {settings.app_name} v{settings.version}...")

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    engine: Optional[TrackerEngine] = None
    try:
        engine = TrackerEngine(settings)
        await engine.start()

        logger.info("Tracker engine running. Press Ctrl+C to stop.")
        await stop_event.wait()
        return 0

    except Exception as e:
        logger.exception(f"Critical application error: {e}")
        return 1

    finally:
        await shutdown_application(engine)


def main() -> None:
    """
    Main application entry point.
    """
    try:
        exit_code = asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Application terminated by keyboard interrupt")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
