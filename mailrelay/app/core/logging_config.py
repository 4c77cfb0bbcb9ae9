"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Dispatch-scoped context (idempotency_key) carried per asyncio task

Usage:
    from mailrelay.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Dispatching", extra={"provider": "ProviderA"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from mailrelay.app.core.config import settings
from mailrelay.app.core.errors import MailRelayError

# ── Context variable for dispatch-scoped data ──
# Each asyncio task gets a copy, so concurrent submits do not clobber each other.
_dispatch_context: ContextVar[Dict[str, Any]] = ContextVar(
    "dispatch_context", default={}
)

# Extra record attributes promoted into JSON output
_EXTRA_FIELDS = (
    "idempotency_key",
    "provider",
    "attempt",
    "delay_seconds",
    "queue_size",
    "circuit_state",
)


def set_dispatch_context(**kwargs: Any) -> Token:
    """
    Replace the dispatch-scoped log context for the current task.

    Returns the token to hand to ``reset_dispatch_context`` once the
    dispatch is over.
    """
    return _dispatch_context.set(kwargs)


def reset_dispatch_context(token: Token) -> None:
    """Restore the context that was active before ``set_dispatch_context``."""
    _dispatch_context.reset(token)


def get_dispatch_context() -> Dict[str, Any]:
    """Get current dispatch context."""
    return _dispatch_context.get()


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line; dispatch extras are promoted to top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        ctx = get_dispatch_context()
        if ctx:
            entry["context"] = ctx

        entry.update(
            (key, getattr(record, key)) for key in _EXTRA_FIELDS if hasattr(record, key)
        )

        exc = record.exc_info[1] if record.exc_info else None
        if exc is not None:
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}
            if isinstance(exc, MailRelayError):
                entry["exception"]["code"] = exc.error_code

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """
    One line per record for watching a dispatch run in a terminal:

        14:02:11 WARNING  [3f9a1c20] mailrelay...dispatcher: Attempt failed ... | ProviderA try=2 circuit=open

    The bracketed prefix is the idempotency key from the dispatch context.
    Provider, attempt, backoff delay, queue size and circuit state are
    appended after ``|`` when the record carries them.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",      # dim
        logging.INFO: "\033[32m",      # green
        logging.WARNING: "\033[33m",   # yellow
        logging.ERROR: "\033[31m",     # red
        logging.CRITICAL: "\033[1;31m",
    }
    CIRCUIT_COLORS = {"closed": "\033[32m", "half_open": "\033[33m", "open": "\033[31m"}
    RESET = "\033[0m"

    def _dispatch_suffix(self, record: logging.LogRecord) -> str:
        parts = []
        provider = getattr(record, "provider", None)
        if provider:
            parts.append(str(provider))
        if hasattr(record, "attempt"):
            parts.append(f"try={record.attempt}")
        if hasattr(record, "delay_seconds"):
            parts.append(f"wait={record.delay_seconds:.2f}s")
        if hasattr(record, "queue_size"):
            parts.append(f"queued={record.queue_size}")
        state = getattr(record, "circuit_state", None)
        if state:
            color = self.CIRCUIT_COLORS.get(state, "")
            parts.append(f"circuit={color}{state}{self.RESET if color else ''}")
        return f" | {' '.join(parts)}" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        key = get_dispatch_context().get("idempotency_key") or getattr(
            record, "idempotency_key", None
        )
        prefix = f" [{str(key)[:8]}]" if key else ""

        line = (
            f"{self.formatTime(record, '%H:%M:%S')} "
            f"{color}{record.levelname:<8}{self.RESET}{prefix} "
            f"{record.name}: {record.getMessage()}{self._dispatch_suffix(record)}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

# Library loggers that drown out dispatch output at INFO
_QUIET_LOGGERS = ("asyncio",)


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Install a single stdout handler on the root logger.

    Parameters
    ----------
    level : str, optional
        Overrides ``settings.LOG_LEVEL``.
    json_output : bool, optional
        Overrides the environment choice (JSON in production, pretty
        elsewhere).
    """
    if json_output is None:
        json_output = settings.is_production
    level_name = (level or settings.LOG_LEVEL).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else PrettyFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    numeric = logging.getLevelName(level_name)
    root.setLevel(numeric if isinstance(numeric, int) else logging.INFO)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
