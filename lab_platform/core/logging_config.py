"""Structured Logging Configuration with structlog"""

import logging
import sys
from typing import Any, Dict
import structlog
from structlog.types import EventDict, Processor
from lab_platform.core.config import settings


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add application context to all log entries.

    Args:
        logger: Logger instance
        method_name: Method name being called
        event_dict: Event dictionary

    Returns:
        Modified event dictionary with app context
    """
    event_dict["app"] = "lab_platform"
    event_dict["version"] = settings.APP_VERSION
    event_dict["environment"] = settings.ENVIRONMENT
    return event_dict


def censor_sensitive_data(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Censor sensitive data in log entries.

    Redacts private keys, passwords, tokens and other credential material.
    Public keys are left alone.

    Args:
        logger: Logger instance
        method_name: Method name being called
        event_dict: Event dictionary

    Returns:
        Modified event dictionary with censored data
    """
    sensitive_keys = {
        'password', 'token', 'secret', 'authorization',
        'private_key', 'privatekey', 'credential',
        'redis_password', 'mongodb_url', 'database_url'
    }

    def censor_dict(d: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively censor sensitive keys in dictionary"""
        censored = {}
        for key, value in d.items():
            key_lower = key.lower()
            if any(sensitive in key_lower for sensitive in sensitive_keys):
                censored[key] = "***REDACTED***"
            elif isinstance(value, dict):
                censored[key] = censor_dict(value)
            elif isinstance(value, list):
                censored[key] = [
                    censor_dict(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                censored[key] = value
        return censored

    return censor_dict(event_dict)


def configure_structlog() -> None:
    """
    Configure structlog for structured logging.

    Sets up processors, formatters, and output configuration.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_app_context,
        censor_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Console output for development, JSON everywhere else
    if settings.DEBUG or settings.ENVIRONMENT == "development" or settings.LOG_FORMAT == "text":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger

    Usage:
        logger = get_logger(__name__)
        logger.info("container_admitted", container_id=container.id, user_id=user_id)
    """
    return structlog.get_logger(name)


# Configure structlog on module import
configure_structlog()


__all__ = [
    'configure_structlog',
    'get_logger',
]
