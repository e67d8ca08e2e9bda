"""Structured logging for Hearth: context-aware, configurable per instance.

Uses structlog's ProcessorFormatter to transparently upgrade all
``logging.getLogger(__name__)`` call sites. Call sites never import structlog.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The sync context (the user and provider calendar currently being worked on)
and OTel trace context are injected automatically via processors that read
from a ContextVar and the current OTel span.

Log directory layout (when ``log_root`` is set)::

    logs/
      hearth/           # Application logs (JSON)
        worker.log
      http/             # httpx / uvicorn transport logs (JSON)
        worker.log
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Sync context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_instance_context: ContextVar[str | None] = ContextVar("hearth_instance", default=None)
_sync_context: ContextVar[dict[str, str] | None] = ContextVar("sync_context", default=None)


def set_instance_context(name: str) -> None:
    """Set the instance name for the current async context."""
    _instance_context.set(name)


def get_sync_context() -> dict[str, str]:
    """Return a copy of the sync context bound to the current async context."""
    return dict(_sync_context.get() or {})


@contextmanager
def sync_context(**fields: str | None) -> Iterator[None]:
    """Bind sync identifiers (``user_id``, ``calendar_id``, ``event_id``) for a block.

    Nested blocks extend the outer context; ``None`` values are dropped.
    """
    merged = get_sync_context()
    merged.update({k: str(v) for k, v in fields.items() if v is not None})
    token = _sync_context.set(merged)
    try:
        yield
    finally:
        _sync_context.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_sync_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``instance`` and the bound sync identifiers into the event dict."""
    event_dict["instance"] = _instance_context.get()
    for key, value in (_sync_context.get() or {}).items():
        event_dict.setdefault(key, value)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
    "asyncpg",
)

_DIR_APP = "hearth"
_DIR_HTTP = "http"


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_sync_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    instance_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format: ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Root directory for structured log files.  When set, creates::

            {log_root}/hearth/{instance_name}.log   (application logs)
            {log_root}/http/{instance_name}.log     (transport logs)

    instance_name:
        Process identity (``worker``, ``api``...). Set in the ContextVar and
        used for file naming.
    """
    if instance_name:
        set_instance_context(instance_name)

    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Reconfiguration must not duplicate output
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _build_processors(time_fmt="iso")
        log_name = instance_name or "hearth"

        for subdir in (_DIR_APP, _DIR_HTTP):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        app_handler = _make_file_handler(log_root / _DIR_APP / f"{log_name}.log", file_processors)
        root.addHandler(app_handler)

        http_handler = _make_file_handler(log_root / _DIR_HTTP / f"{log_name}.log", file_processors)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
