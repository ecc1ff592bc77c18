import logging, logging.config
from typing import Any


def build_logging_config(
    level: str = "INFO",
    access_log: bool = True,
    audit_level: str = "INFO",
) -> dict[str, Any]:
    """dictConfig for the app: console logs, uvicorn access lines and the audit trail."""
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                        "datefmt": "%H:%M:%S"},
            # Uvicorn pre-formats access lines
            "access_simple": {"format": "%(message)s"},
            # ISO timestamps so audit lines can be shipped as-is
            "audit": {"format": "%(asctime)s audit %(levelname)s %(message)s",
                      "datefmt": "%Y-%m-%dT%H:%M:%S%z"},
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "default"},
            "access": {"class": "logging.StreamHandler", "formatter": "access_simple"},
            "audit": {"class": "logging.StreamHandler", "formatter": "audit",
                      "stream": "ext://sys.stdout"},
        },
        "loggers": {
            "uvicorn.error": {"level": level, "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": "INFO" if access_log else "WARNING",
                               "handlers": ["access"], "propagate": False},
            # Independent of LOG_LEVEL: raising the app level must not hide security events
            "authgate.audit": {"level": audit_level.upper(), "handlers": ["audit"],
                               "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def setup_logging(level: str = "INFO", access_log: bool = True, audit_level: str = "INFO"):
    logging.config.dictConfig(build_logging_config(level, access_log, audit_level))
