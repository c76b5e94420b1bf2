"""Structured logging for shiftsync.

Uses structlog's ProcessorFormatter so every plain
``logging.getLogger(__name__)`` call site is rendered through the same
processor chain without changes at the call sites.

Two output formats:
- ``text``: Colored, human-readable console output (default)
- ``json``: JSON lines, one event per line

The watched mailbox identity is injected into every event from a ContextVar,
so log lines from the supervisor, the pipeline and the calendar client can be
correlated when several watchers share one log sink.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog

# ---------------------------------------------------------------------------
# Mailbox context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_mailbox_context: ContextVar[str | None] = ContextVar("mailbox", default=None)


def set_mailbox_context(identity: str | None) -> None:
    """Set the mailbox identity for the current async context."""
    _mailbox_context.set(identity)


def get_mailbox_context() -> str | None:
    """Get the mailbox identity for the current async context."""
    return _mailbox_context.get()


def add_mailbox_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject the ``mailbox`` key from the ContextVar into the event dict."""
    event_dict["mailbox"] = _mailbox_context.get()
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "pdfminer",
)

_VALID_FORMATS = ("text", "json")


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_mailbox_context,
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


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
    mailbox: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for colored console output, ``"json"`` for JSON lines.
    log_file:
        Optional path of an additional JSON log file. Parent directories are
        created.
    mailbox:
        Mailbox identity stored in the ContextVar.
    """
    if fmt not in _VALID_FORMATS:
        raise ValueError(f"log format must be one of {_VALID_FORMATS}, got: {fmt!r}")

    if mailbox:
        set_mailbox_context(mailbox)

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
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_make_file_handler(log_file, _build_processors(time_fmt="iso")))

    # Configure structlog itself (for direct structlog.get_logger() usage)
    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
