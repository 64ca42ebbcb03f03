"""
Channel Worker

Background worker for the messaging channels engine:
- Periodically moves instances stuck in connecting to error once they
  pass the stuck threshold
- Logs a summary of each sweep

Live polling of linking codes runs inside the webhook service, next to the
connection requests that start it.
"""

import asyncio
import logging
import signal

from basecore.logging import setup_logging
from basecore.settings import get_settings

from messaging_channels.engine import ChannelEngine, build_engine, build_event_publisher
from messaging_channels.service.recovery import RecoveryManager

logger = logging.getLogger(__name__)

# Graceful shutdown flag
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def run_sweep(recovery: RecoveryManager) -> int:
    """
    Run one reclaim sweep.

    Returns:
        Number of instances reset
    """
    try:
        results = recovery.reclaim_stale_connections()
    except Exception as e:
        logger.error(f"Recovery sweep failed: {e}", exc_info=True)
        return 0

    reset = [r for r in results if r.success]
    failed = [r for r in results if not r.success]

    if results:
        logger.info(
            f"Recovery sweep reset {len(reset)} instance(s)",
            extra={"reset": len(reset), "failed": len(failed)},
        )
    for result in failed:
        logger.warning(
            f"Failed to reset instance {result.instance_id}: {result.error}",
            extra={"instance_id": str(result.instance_id)},
        )

    return len(reset)


async def main_loop(engine: ChannelEngine | None = None):
    """Main worker loop."""
    settings = get_settings()

    if engine is None:
        from basecore.db import get_sessionmaker

        engine = build_engine(
            get_sessionmaker(),
            settings=settings,
            events=build_event_publisher(settings),
        )

    interval = settings.RECOVERY_SWEEP_INTERVAL_SECONDS
    logger.info(f"Channel worker started (sweep every {interval}s)")

    try:
        while not shutdown_requested:
            run_sweep(engine.recovery)

            # Sleep in short steps so a shutdown signal is picked up quickly
            waited = 0
            while waited < interval and not shutdown_requested:
                await asyncio.sleep(1)
                waited += 1
    finally:
        await engine.close()
        logger.info("Channel worker stopped")


def main():
    """Entry point."""
    setup_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    asyncio.run(main_loop())


if __name__ == "__main__":
    main()
