# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge. Console output by default, JSON lines on request.

Leaf module: no golfproxy imports. Safe to call early in startup.
Modules keep logging through ``logging.getLogger(__name__)``; the
ProcessorFormatter renders their records alongside structlog's own.
"""

from __future__ import annotations

import logging
import sys

import structlog

# Loggers whose records duplicate what the golf request log already says.
_QUIET_LOGGERS = ("uvicorn.access",)


def configure(*, json_output: bool = False, level: str = "INFO") -> None:
    """Configure structlog with a stdlib bridge on stderr.

    Args:
        json_output: JSON lines instead of the human-readable console renderer.
        level: Root logger level name (unknown names fall back to INFO).
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request(*, request_id: str, session_id: str | None) -> None:
    """Bind per-request fields so every record logged by this task carries them."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, session_id=session_id or "")


def rebind_session(session_id: str | None) -> None:
    """Update the bound session id once the orchestrator has assigned one."""
    structlog.contextvars.bind_contextvars(session_id=session_id or "")
