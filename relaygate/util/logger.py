"""Gateway logging: one ``relaygate`` logger, uvicorn loggers share its handlers."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from relaygate.config.settings import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
# uvicorn 自带 access log 与网关的 "METHOD PATH STATUS" 重复，不接管
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error")


def _resolve_level(raw: str) -> int:
    level = logging.getLevelName(str(raw or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _file_handler(level: int, formatter: logging.Formatter) -> logging.Handler | None:
    log_dir = Path(settings.log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / "relaygate.log",
            maxBytes=settings.log_file_max_mb * 1024 * 1024,
            backupCount=settings.log_file_backups,
            encoding="utf-8",
        )
    except OSError:
        # 只读文件系统上退化为仅 stderr
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _build_handlers(level: int) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream_handler]
    file_handler = _file_handler(level, formatter)
    if file_handler is not None:
        handlers.append(file_handler)
    return handlers


def _build_logger() -> logging.Logger:
    configured_logger = logging.getLogger("relaygate")
    if configured_logger.handlers:
        return configured_logger
    level = _resolve_level(settings.log_level)
    configured_logger.setLevel(level)
    for handler in _build_handlers(level):
        configured_logger.addHandler(handler)
    configured_logger.propagate = False
    return configured_logger


logger = _build_logger()


def get_logger(name: str) -> logging.Logger:
    """Child logger under the relaygate namespace, e.g. ``relaygate.metrics``."""
    return logger.getChild(name)


def attach_uvicorn_loggers() -> None:
    """Route uvicorn's server logs through the gateway handlers (run uvicorn with ``log_config=None``)."""
    for name in _UVICORN_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = list(logger.handlers)
        server_logger.setLevel(logger.level)
        server_logger.propagate = False
