# delivery_engine/run_snapshot_scheduler.py
"""Run the snapshot scheduler worker. Several instances may run at once."""

import logging
import signal
import sys
import time

from delivery_engine.config import settings
from delivery_engine.container import snapshot_scheduler

# Setup logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def signal_handler(sig, frame):
    """Handle Ctrl+C gracefully."""
    logger.info("🛑 Shutting down snapshot scheduler...")
    snapshot_scheduler.stop()
    sys.exit(0)


def main():
    """Main entry point."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("=" * 80)
    logger.info("🚀 SNAPSHOT SCHEDULER")
    logger.info("=" * 80)
    logger.info(f"Interval: {settings.snapshot_scheduler_interval_seconds}s")
    logger.info(f"Velero namespace: {settings.velero_namespace}")
    logger.info("")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 80)

    snapshot_scheduler.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("🛑 Shutting down snapshot scheduler...")
        snapshot_scheduler.stop()


if __name__ == "__main__":
    main()
