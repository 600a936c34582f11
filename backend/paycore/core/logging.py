"""Logging configuration for the application"""
import logging

from paycore.core.config import settings

# Named loggers used across modules, one per operational concern
DOMAIN_LOGGERS = ("security", "webhook", "ledger", "anomaly", "replay")


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    for name in DOMAIN_LOGGERS:
        logging.getLogger(name).setLevel(level)
    # Anomalies are always visible, whatever LOG_LEVEL says
    logging.getLogger("anomaly").setLevel(min(level, logging.WARNING))

    # Silence noisy third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)
