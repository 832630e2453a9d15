# provisioning_engine/run_workers.py
"""Run the background queue workers (domain, SSL and host initialization)."""

import logging
import signal
import sys
import time

from provisioning_engine.container import get_container

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    container = get_container()
    workers = container.build_workers()

    def shutdown(sig=None, frame=None):
        logger.info("🛑 Shutting down workers...")
        for worker in workers:
            worker.stop(timeout=30)
        container.close()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    logger.info("=" * 80)
    logger.info("🚀 PROVISIONING ENGINE WORKERS")
    logger.info("=" * 80)
    for worker in workers:
        logger.info(f"Queue: {worker.queue} (slots: {worker.slots.total_slots()})")
    logger.info("")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 80)

    for worker in workers:
        worker.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
