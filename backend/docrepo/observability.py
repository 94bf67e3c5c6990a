"""Logging setup and optional Logfire instrumentation."""

import logging

import logfire

from docrepo import __version__
from docrepo.config import Settings

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Basic console logging for scripts that host the repositories."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def initialize_logfire(settings: Settings) -> bool:
    """
    Initialize Logfire and bridge stdlib logging into it.

    Instruments:
    - Python logging (monitor and repository messages)
    - PyMongo command events (blocking and motor clients share the driver)

    Returns True when Logfire was configured. Failures are logged, never raised.
    """
    if not settings.logfire_token:
        logger.warning("Logfire token not set - observability disabled")
        return False

    try:
        logfire.configure(
            token=settings.logfire_token,
            service_name="docrepo",
            service_version=__version__,
        )

        root_logger = logging.getLogger()
        root_logger.addHandler(logfire.LogfireLoggingHandler())

        try:
            logfire.instrument_pymongo()
        except Exception as instrument_error:
            logger.debug(f"PyMongo instrumentation skipped: {instrument_error}")

        logger.info("Logfire initialized")
        return True

    except Exception as e:
        logger.warning(f"Failed to initialize Logfire: {e}")
        return False
