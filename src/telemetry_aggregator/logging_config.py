"""structlog setup: one key=value (TSKV-style) record per line on stdout."""
from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Any

import structlog

_ESCAPES = str.maketrans({"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"})

# Third-party loggers that are noisy below WARNING.
_QUIET_LOGGERS = ("asyncpg", "redis")


def _clean(value: Any) -> Any:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str):
        return value.translate(_ESCAPES)
    return value


def flatten_values_processor(logger, method_name, event_dict):
    """Escape control characters and unwrap enums in every value.

    Runs after ``format_exc_info`` so tracebacks end up on the same line.
    Session and batch statuses are logged as ``status=running`` rather than
    their enum repr.
    """
    for key, value in event_dict.items():
        if isinstance(value, (list, tuple, set, frozenset)):
            event_dict[key] = [_clean(item) for item in value]
        elif isinstance(value, dict):
            event_dict[key] = {k: _clean(v) for k, v in value.items()}
        else:
            event_dict[key] = _clean(value)
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """Keeps stdlib records (aiohttp access log) on a single line."""

    def format(self, record):
        return super().format(record).replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    access_logger = logging.getLogger("aiohttp.access")
    access_logger.handlers = []
    access_logger.propagate = True
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # timestamp=... level=info logger=telemetry_aggregator.ingestion.scheduler event=... session_id=42
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            flatten_values_processor,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
