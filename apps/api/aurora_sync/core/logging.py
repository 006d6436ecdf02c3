"""
structlog setup for the API, Celery workers and beat.

``development`` renders coloured console lines; every other environment emits
one JSON object per line. License keys are reduced to their tier prefix and
credentials are masked before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from contextvars import ContextVar
from typing import Any, List, Optional

import structlog
from structlog.processors import CallsiteParameter
from structlog.types import EventDict, Processor

from ..config import settings
from ..services.license_keys import mask_license_key

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_LICENSE_KEY_RE = re.compile(r"\bAUR-(?:BAS|PRO|ENT)-V2-[A-Z0-9]{8}-[A-Za-z0-9]{8}\b")
_SECRET_FIELDS = ("secret", "token", "password", "signature", "authorization")


def _mask(value: Any) -> Any:
    if isinstance(value, str):
        return _LICENSE_KEY_RE.sub(lambda m: mask_license_key(m.group(0)), value)
    if isinstance(value, dict):
        return {k: _mask(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask(v) for v in value]
    return value


def redact(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Hide credentials entirely and license keys down to their tier."""
    for key in list(event_dict):
        if any(field in key.lower() for field in _SECRET_FIELDS):
            event_dict[key] = "***"
        else:
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def add_request_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    if request_id := request_id_ctx.get():
        event_dict.setdefault("request_id", request_id)
    event_dict["service"] = "aurora-sync"
    event_dict["pid"] = os.getpid()
    return event_dict


def configure_structlog() -> None:
    """Configure structlog and the stdlib root logger once per process."""
    development = settings.env.lower() == "development"
    level = (settings.log_level or ("DEBUG" if development else "INFO")).upper()

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_request_context,
        redact,
        structlog.processors.StackInfoRenderer(),
    ]

    if development:
        processors += [
            structlog.processors.CallsiteParameterAdder(
                parameters=[CallsiteParameter.FILENAME, CallsiteParameter.LINENO]
            ),
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level))

    # Per-request access lines come from the correlation middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.app.trace").setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger
