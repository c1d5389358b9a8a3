"""
Pagesflow Controller - Main entry point.
"""

import logging
import os
import sys

from controller.src.config import get_settings
from controller.src.credentials import PipelineSecrets, SecretMasker
from controller.src.worker import run_worker

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

def install_secret_masker():
    """Mask publishing credentials in everything the worker logs."""
    masker = SecretMasker(PipelineSecrets.from_settings(settings).values())
    for handler in logging.getLogger().handlers:
        handler.addFilter(masker)

def main():
    """Main entry point."""
    install_secret_masker()

    logger.info("Starting Pagesflow Controller")
    logger.info(f"Sandbox root: {settings.sandbox_root}")
    logger.info(f"Redis URL: {settings.redis_url}")

    missing = PipelineSecrets.from_settings(settings).missing()
    if missing:
        logger.warning(f"Publishing credentials not set: {', '.join(missing)}; runs will fail at publish")

    # Sandbox root must be writable before any run starts
    try:
        os.makedirs(settings.sandbox_root, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create sandbox root {settings.sandbox_root}: {e}")
        sys.exit(1)
    if not os.access(settings.sandbox_root, os.W_OK):
        logger.error(f"Sandbox root {settings.sandbox_root} is not writable")
        sys.exit(1)

    # Start worker
    logger.info("Starting worker...")
    run_worker()

if __name__ == "__main__":
    main()
