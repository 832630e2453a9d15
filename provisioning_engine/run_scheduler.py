# provisioning_engine/run_scheduler.py
"""Run the fleet scheduler (availability, resync, directives, stuck initializations)."""

import logging
import sys

from provisioning_engine.container import get_container

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    logger.info("Starting Fleet Scheduler")

    container = get_container()
    scheduler = container.build_scheduler()

    try:
        scheduler.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        container.close()


if __name__ == "__main__":
    main()
