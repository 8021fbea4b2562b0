"""Logging helpers: root logger setup and the per-request JSONL access log."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict

from .config import ProxyConfig

__all__ = ["configure_logging", "resolve_level", "JsonlLogger"]

_MANAGED_HANDLER_FLAG = "_nim_proxy_managed_handler"
_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def resolve_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level {name!r}")
    return level


def _remove_managed_handlers(root: logging.Logger) -> None:
    for handler in list(root.handlers):
        if getattr(handler, _MANAGED_HANDLER_FLAG, False):
            root.removeHandler(handler)
            handler.close()


def configure_logging(
    cfg: ProxyConfig,
    *,
    log_name: str = "nim_proxy",
    include_console: bool = True,
) -> Path:
    """Send root logging to ``<log_dir>/<log_name>.log`` at ``cfg.log_level``.

    ``log_dir`` defaults to ``./logs``. Handlers installed by an earlier call
    are swapped out, so repeated calls do not duplicate output.
    """

    directory = Path(cfg.log_dir).expanduser() if cfg.log_dir else Path.cwd() / "logs"
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / f"{log_name}.log"
    level = resolve_level(cfg.log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    _remove_managed_handlers(root_logger)

    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if include_console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        setattr(handler, _MANAGED_HANDLER_FLAG, True)
        root_logger.addHandler(handler)

    # httpx logs every upstream call at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    logging.captureWarnings(True)
    return log_path


class JsonlLogger:
    def __init__(self, path: str, max_bytes: int = 25_000_000):
        self.path = path
        self.max_bytes = max_bytes
        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    def _rotate_if_needed(self):
        try:
            if (
                os.path.exists(self.path)
                and os.path.getsize(self.path) > self.max_bytes
            ):
                ts = time.strftime("%Y%m%d-%H%M%S")
                os.rename(self.path, f"{self.path}.{ts}")
        except OSError as exc:
            logger.warning("[access-log] Rotation of %s failed: %s", self.path, exc)

    def log(self, record: Dict[str, Any]):
        self._rotate_if_needed()
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("[access-log] Write to %s failed: %s", self.path, exc)
