"""
Structured logging.

JSON lines in production, colored console output with DEBUG on. Every event
carries the service name and version; phone numbers in the known fields are
masked down to their last four digits before rendering.
"""

import logging
import sys
from typing import Any

import structlog

SERVICE_NAME = "concierge-api"

# Event fields that hold a user's or provider's phone number
PHONE_FIELDS = frozenset({"phone", "to", "from_number", "user_phone", "original", "substitute"})

NOISY_LOGGERS = ("httpx", "httpcore", "twilio", "urllib3", "uvicorn.access")


def mask_phone(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    digits = [ch for ch in value if ch.isdigit()]
    if len(digits) <= 4:
        return value
    return "***" + "".join(digits[-4:])


def mask_phone_numbers(logger, method_name, event_dict):
    for key in PHONE_FIELDS.intersection(event_dict):
        event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def configure_logging(log_level: str = "INFO", debug: bool = False, version: str = ""):
    """
    Configure stdlib logging and structlog once per process.

    Safe to call again (the app factory runs once per test); the last call wins.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    def add_service(logger, method_name, event_dict):
        event_dict.setdefault("service", SERVICE_NAME)
        if version:
            event_dict.setdefault("version", version)
        return event_dict

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_service,
        mask_phone_numbers,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str = None) -> Any:
    """
    Structured logger for a module.

    Usage:
        logger = get_logger(__name__)
        logger.info("call_created", call_id="abc", provider="Ace Carpentry")
    """
    return structlog.get_logger(name)
