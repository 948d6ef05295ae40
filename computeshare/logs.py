"""Logging setup shared by the worker client and its CLI."""

from __future__ import annotations

import json
import logging
import socket
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

LOGGER_NAME = "computeshare-worker"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def setup_logging(logs_dir: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    logger = get_logger()
    if logger.handlers:
        return logger
    logger.setLevel(level)
    if logs_dir is not None:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(logs_dir / "worker.log", maxBytes=5 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(stream_handler)
    logger.propagate = False
    return logger


def log(message: str, prefix: str = "ℹ️", level: int = logging.INFO, **extra: Any) -> None:
    get_logger().log(level, f"{prefix} {message}", extra={"extra": {"node": socket.gethostname(), **extra}})


def warn(message: str, prefix: str = "⚠️", **extra: Any) -> None:
    log(message, prefix=prefix, level=logging.WARNING, **extra)


__all__ = ["JSONFormatter", "LOGGER_NAME", "get_logger", "log", "setup_logging", "warn"]
