# delivery_engine/run_socket_service.py
"""Run the agent socket API together with the deploy, support bundle and restore loops."""

import logging

import uvicorn

from delivery_engine.config import settings

# Setup logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    logger.info("=" * 80)
    logger.info("🚀 DELIVERY ENGINE SOCKET SERVICE")
    logger.info("=" * 80)
    logger.info(f"Listening on: {settings.api_host}:{settings.api_port}")
    logger.info(f"Deploy loop interval: {settings.deploy_loop_interval_seconds}s")
    logger.info(f"Support bundle loop interval: {settings.support_bundle_loop_interval_seconds}s")
    logger.info(f"Restore loop interval: {settings.restore_loop_interval_seconds}s")
    logger.info("=" * 80)

    # uvicorn handles SIGINT/SIGTERM; the app lifespan stops the loops
    uvicorn.run(
        "delivery_engine.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
