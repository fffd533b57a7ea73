"""
Structured logging for the payments engine.

structlog renders each event as one JSON line on stdout. The stdlib root
logger gets a python-json-logger handler, so records from httpx, stripe and
SQLAlchemy come out in the same shape.
"""
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from property_payments.config import Settings, get_settings

EventDict = Dict[str, Any]
Processor = Callable[[Any, str, EventDict], EventDict]

# Event keys that may carry gateway credentials or card data
SENSITIVE_KEYS = frozenset(
    {"authorization", "secret_key", "admin_key", "signature", "card_number", "cvv"}
)
REDACTED = "[redacted]"

THIRD_PARTY_LEVELS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "stripe": logging.INFO,
}


def app_context_processor(settings: Settings) -> Processor:
    """Stamp every event with the service name and environment it was logged from."""
    app_name = settings.app_name
    app_env = settings.app_env

    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app_name", app_name)
        event_dict.setdefault("app_env", app_env)
        return event_dict

    return add_app_context


def redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def build_processors(settings: Settings) -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        app_context_processor(settings),
        redact_sensitive,
        structlog.processors.JSONRenderer(),
    ]


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Route structlog and stdlib logging through one JSON handler.

    Safe to call more than once; the root handlers are replaced each time.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level))
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.addHandler(_json_handler())

    for name, level in THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
