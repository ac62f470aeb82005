"""Logging setup with rich console output."""
from __future__ import annotations

import logging
from threading import RLock

from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install as install_rich_traceback

APP_LOGGER_NAME = "expense_ledger"

_config_lock = RLock()
_configured_level: int | None = None


def _parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def init_logging(level: str | int = "INFO", rich_tracebacks: bool = True) -> None:
    """Install a rich console handler on the root logger.

    Repeated calls with the same level are no-ops; a different level swaps
    the handler.
    """

    global _configured_level
    parsed = _parse_level(level)
    with _config_lock:
        if _configured_level == parsed:
            return
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, RichHandler):
                root.removeHandler(handler)
        if rich_tracebacks:
            install_rich_traceback(show_locals=False)
        handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=rich_tracebacks,
            show_level=True,
            show_path=False,
            log_time_format="%Y-%m-%d %H:%M:%S",
        )
        handler.setLevel(parsed)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(handler)
        root.setLevel(parsed)
        _configured_level = parsed


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or APP_LOGGER_NAME)
