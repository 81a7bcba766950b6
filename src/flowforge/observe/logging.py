"""Process-wide logging setup: rich console output or JSON lines."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from rich.console import Console
from rich.logging import RichHandler

_NOISY_LOGGERS = ("litellm", "LiteLLM", "httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "info", log_format: str = "pretty", console: Console | None = None) -> logging.Handler:
    """Install a single handler on the ``flowforge`` logger and return it.

    Calling it again replaces the previous handler, so the CLI and the
    server can both configure logging without doubling output.
    """
    if log_format == "json":
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    logger = logging.getLogger("flowforge")
    for existing in list(logger.handlers):
        if getattr(existing, "_flowforge", False):
            logger.removeHandler(existing)
    handler._flowforge = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
