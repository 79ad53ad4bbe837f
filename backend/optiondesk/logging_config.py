"""Console logging setup for the OptionDesk process."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s"
LOG_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers pinned to WARNING
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def setup_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger.

    Safe to call more than once; the previous handler is replaced.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_optiondesk", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATETIME_FORMAT))
    handler._optiondesk = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def mask(secret: str | None, keep: int = 3) -> str:
    """Render a secret for logs: first ``keep`` characters, then ``...``."""
    if not secret:
        return "MISSING"
    return secret[:keep] + "..."
