"""
Structured logging configuration for RelayBridge.

Uses structlog to provide machine-parseable, context-rich log output.
Every log entry carries a timestamp and whatever context the caller bound
(typically ``session_id`` and ``pid``).

Setup:
    Call ``configure_logging()`` once at process startup (before any
    subsystem emits a log).  Every module then uses::

        import structlog
        logger = structlog.get_logger()

    Bound loggers carry context automatically::

        log = logger.bind(session_id="sess_0123456789ab")
        log.info("process_spawned", pid=4242)
        # → {"event": "process_spawned", "session_id": "sess_0123456789ab",
        #    "pid": 4242, "timestamp": "2026-...", "level": "info"}

uvicorn and any other stdlib logger are routed through the same processor
chain, so a JSON deployment gets one uniform stream on stderr.
"""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structlog + stdlib logging for the process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: If True, emit JSON lines (for production / log aggregation).
                     If False, emit coloured human-readable output (for dev).

    Safe to call more than once: the root handler is only installed once,
    while the level and renderer follow the latest call.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
        )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    root = logging.getLogger()
    existing = [
        h
        for h in root.handlers
        if isinstance(h, logging.StreamHandler)
        and isinstance(getattr(h, "formatter", None), structlog.stdlib.ProcessorFormatter)
    ]
    if existing:
        for h in existing:
            h.setFormatter(formatter)
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel(log_level)

    # uvicorn installs its own handlers unless told otherwise; keep one pipeline
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.propagate = True
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
