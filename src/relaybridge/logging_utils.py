"""Process-wide logging setup for the relaybridge proxy."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

__all__ = ["configure_logging"]

_MANAGED_HANDLER_FLAG = "_relaybridge_managed_handler"
# Chatty third-party loggers that are only useful while debugging
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "websockets")


def _log_directory(log_dir: Optional[Path]) -> Path:
    if log_dir:
        return Path(log_dir).expanduser()
    env_override = os.environ.get("RELAY_LOG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    return Path.cwd() / "logs"


def _managed(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _MANAGED_HANDLER_FLAG, True)
    return handler


def configure_logging(
    log_name: str,
    *,
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    include_console: bool = True,
    max_bytes: int = 10_000_000,
    backup_count: int = 3,
) -> Path:
    """Send root logging to ``<log_dir>/<log_name>.log`` and optionally stderr.

    Handlers installed by an earlier call are replaced, so ``serve`` can be
    reconfigured at DEBUG when ``debug_mode`` is on. Below DEBUG the access
    and client loggers are held at WARNING.
    """

    directory = _log_directory(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / f"{log_name}.log"

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, _MANAGED_HANDLER_FLAG, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if include_console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(_managed(handler))

    quiet_level = logging.NOTSET if level <= logging.DEBUG else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    logging.captureWarnings(True)
    return log_path
