# shipyard/scheduler/signals.py
"""
Graceful shutdown signal handling for the scheduler daemon.

SIGINT/SIGTERM only request a stop; the loop finishes its current cycle and
the lifecycle then stops child runs and releases the daemon lock.
"""

import logging
import signal

from shipyard.scheduler.daemon import Scheduler

logger = logging.getLogger(__name__)


def setup_signal_handlers(scheduler: Scheduler) -> None:
    """
    Register SIGINT and SIGTERM to request a cooperative stop.

    Must be called from the main thread.

    Args:
        scheduler: Scheduler whose loop should stop
    """

    def _signal_callback(sig_num, frame) -> None:
        sig_name = signal.Signals(sig_num).name
        logger.info(f"Received {sig_name}, stopping after the current cycle...")
        scheduler.request_stop()

    signal.signal(signal.SIGINT, _signal_callback)
    signal.signal(signal.SIGTERM, _signal_callback)
    logger.info("Signal handlers registered")
