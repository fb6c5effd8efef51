import logging
import os
from logging.config import dictConfig

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_level(name: str, default: str) -> str:
    return os.getenv(name, default).upper()


def configure_logging() -> None:
    """Route every logger to stderr, with levels taken from IPMA_* flags."""
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": DEFAULT_LOG_FORMAT}},
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                # Sync/outbox events are chatty; keep them tunable on their own.
                "ipma.telemetry": {"level": _env_level("IPMA_TELEMETRY_LOG_LEVEL", "INFO")},
                "ipma_prep.outbox": {"level": _env_level("IPMA_OUTBOX_LOG_LEVEL", "INFO")},
            },
            "root": {
                "handlers": ["stderr"],
                "level": _env_level("IPMA_LOG_LEVEL", "INFO"),
            },
        }
    )

    if os.getenv("IPMA_DEBUG_HTTP", "0") == "1":
        logging.getLogger("httpx").setLevel(logging.DEBUG)
    if os.getenv("IPMA_DEBUG_SQL", "0") == "1":
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)


__all__ = ["DEFAULT_LOG_FORMAT", "configure_logging"]
