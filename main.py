"""
dashsync entry point.
Runs the synchronization layer as a standalone process: periodic refresh,
SIGUSR1 as the external wake signal, cache persisted on shutdown.
"""

import asyncio
import signal
import sys

from loguru import logger

from dashsync.settings import global_settings
from dashsync.sync import DataSyncService


async def main() -> None:
    """Main function"""
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level)
    logger.info("Starting dashsync...")

    service = DataSyncService.from_settings(global_settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGUSR1, service.wake, "SIGUSR1")
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    except (NotImplementedError, AttributeError):
        logger.warning("Signal handlers unavailable on this platform")

    try:
        logger.info("Initializing synchronization service...")
        await service.init(refresh_now=True)

        status = service.get_status()
        logger.info(
            f"Initial refresh done: {status.update_count} update(s), "
            f"{len(status.errors)} error(s)"
        )

        logger.info("dashsync is running. Press Ctrl+C to stop.")
        await stop.wait()

    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        await service.dispose()
        logger.info("dashsync stopped")


if __name__ == "__main__":
    asyncio.run(main())
