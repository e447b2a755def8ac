"""
Background worker running the Outlook reconciliation loop.

Usage:
    python -m ava.worker

Ticks every RECONCILE_INTERVAL_SECONDS. For production, run this as a separate
process (e.g., systemd service, Docker container) and leave
RUN_RECONCILER_IN_APP off in the web process.
"""

import asyncio
import logging
import signal

from ava.core.config import settings
from ava.core.structured_logging import build_log_context
from ava.services.calendar_connector import get_connector
from ava.services.reconciliation_service import ReconciliationLoop

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def worker_loop() -> None:
    """Run reconciliation ticks until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    running_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            running_loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    loop = ReconciliationLoop(get_connector())
    logger.info(
        "Worker starting (interval: %ss, zone: %s)",
        loop.interval_seconds,
        settings.DISPLAY_TIMEZONE,
    )
    await loop.run_forever(stop)


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(tick_id="worker"),
        )
        raise


if __name__ == "__main__":
    main()
