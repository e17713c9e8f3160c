"""Process-wide structured logging for the service and the extraction worker.

``configure_logging()`` is called once by each entry point.  After that,
orchestration code logs through structlog and leaf helpers may keep using
``logging.getLogger(__name__)``; both end up as one JSON object per line
(or console output at DEBUG)::

    logger = structlog.get_logger(__name__)
    logger.info("supervisor: mission created", keyword="shoes")

Every record carries ``timestamp``, ``level``, ``logger`` and ``event``, plus
``mission_id`` whenever :data:`mission_id_var` is set for the current task.

The worker CLI passes ``sys.stderr``: a worker's stdout is reserved for the
progress protocol.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

mission_id_var: ContextVar[str | None] = ContextVar("mission_id", default=None)
"""Mission being handled by the current task (supervisor monitor or worker)."""

REDACTED = "[REDACTED]"

_SENSITIVE_KEY_PARTS = (
    "password",
    "secret",
    "token",
    "credential",
    "authorization",
    "cookie",
    "database_url",
)

# Chatty at INFO; raised to WARNING outside DEBUG.
_QUIET_LIBRARIES = ("apscheduler", "asyncio", "sqlalchemy.engine")


def _is_sensitive(key: object) -> bool:
    lowered = str(key).lower()
    return any(part in lowered for part in _SENSITIVE_KEY_PARTS)


def _redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:  # noqa: ARG001
    """Mask sensitive keys at the top level and inside dict values one level down."""
    for key, value in list(event_dict.items()):
        if _is_sensitive(key):
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {k: REDACTED if _is_sensitive(k) else v for k, v in value.items()}
    return event_dict


def _inject_mission_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:  # noqa: ARG001
    mission_id = mission_id_var.get()
    if mission_id is not None:
        event_dict.setdefault("mission_id", mission_id)
    return event_dict


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        _inject_mission_id,
        _redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(log_level: str = "INFO", stream: TextIO | None = None) -> None:
    """Route structlog and stdlib logging to a single handler on *stream*.

    Safe to call more than once; each call replaces the root handler.

    Args:
        log_level: Level name, case-insensitive.  ``DEBUG`` switches to the
            console renderer.
        stream: Destination; ``sys.stdout`` by default.
    """
    level_name = log_level.upper()
    debug = level_name == "DEBUG"
    pre_chain = _pre_chain()
    renderer: Processor = (
        structlog.dev.ConsoleRenderer(colors=False) if debug else structlog.processors.JSONRenderer()
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))

    if not debug:
        for name in _QUIET_LIBRARIES:
            logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
