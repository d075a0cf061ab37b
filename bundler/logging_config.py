"""
Structured Logging Configuration

Provides:
- Run / attempt context (run_id, attempt, endpoint, bundle_id) via contextvars
- JSON formatting for machine parsing
- Human-readable console formatting with optional color
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
from uuid import uuid4


run_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("run_id", default=None)
attempt_var: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar("attempt", default=None)
endpoint_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("endpoint", default=None)
bundle_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("bundle_id", default=None)


def current_context() -> Dict[str, Any]:
    """Non-empty context fields for the running task."""
    context = {
        "run_id": run_id_var.get(),
        "attempt": attempt_var.get(),
        "endpoint": endpoint_var.get(),
        "bundle_id": bundle_id_var.get(),
    }
    return {key: value for key, value in context.items() if value is not None}


class RunContext:
    """Context manager tagging every log line of one submission run."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or uuid4().hex
        self._token = None

    def __enter__(self):
        self._token = run_id_var.set(self.run_id)
        return self

    def __exit__(self, *args):
        run_id_var.reset(self._token)


class AttemptContext:
    """Context manager for one attempt; ``bundle_id`` is filled in once known."""

    def __init__(self, attempt: int, endpoint: Optional[str] = None):
        self.attempt = attempt
        self.endpoint = endpoint
        self._tokens = []

    def __enter__(self):
        # Store (var, token) pairs to reset correctly
        self._tokens.append((attempt_var, attempt_var.set(self.attempt)))
        self._tokens.append((endpoint_var, endpoint_var.set(self.endpoint)))
        self._tokens.append((bundle_id_var, bundle_id_var.set(None)))
        return self

    def set_bundle_id(self, bundle_id: str) -> None:
        bundle_id_var.set(bundle_id)

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)


LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
RESET = "\033[0m"


class JSONFormatter(logging.Formatter):
    """One JSON object per line: time, level, logger, message, then run context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **current_context(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class StructuredFormatter(logging.Formatter):
    """
    Console line: ``HH:MM:SS.mmm [LEVEL] logger: message (run_id=..., attempt=...)``.

    The run id is cut to eight characters.
    """

    def __init__(self, use_color: bool = False):
        super().__init__()
        self.use_color = use_color

    def _level(self, levelname: str) -> str:
        if self.use_color and levelname in LEVEL_COLORS:
            return f"{LEVEL_COLORS[levelname]}{levelname}{RESET}"
        return levelname

    @staticmethod
    def _context_suffix() -> str:
        context = current_context()
        if not context:
            return ""
        if "run_id" in context:
            context["run_id"] = context["run_id"][:8]
        return " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        line = f"{clock} [{self._level(record.levelname)}] {record.name}: {record.getMessage()}"
        line += self._context_suffix()
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: Union[str, int] = logging.INFO,
    json_format: bool = False,
    stream=None,
) -> logging.Logger:
    """
    Configure root logging for a bundler run.

    Replaces any handlers already on the root logger. Console output is
    colored only when ``stream`` is a terminal.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    stream = stream or sys.stderr

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        isatty = getattr(stream, "isatty", None)
        handler.setFormatter(StructuredFormatter(use_color=bool(isatty and isatty())))
    root_logger.addHandler(handler)

    # aiohttp and solana-py are chatty at DEBUG
    for noisy in ("aiohttp", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    return root_logger
