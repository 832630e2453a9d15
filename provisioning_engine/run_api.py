# provisioning_engine/run_api.py
"""Run the provisioning API."""

import logging

import uvicorn

from provisioning_engine.api.main import app

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    logger.info("🚀 Starting Provisioning API...")
    logger.info("📍 Listening on 0.0.0.0:8000")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )


if __name__ == "__main__":
    main()
