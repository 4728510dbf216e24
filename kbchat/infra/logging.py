"""
日志配置

- 开发/测试环境输出带颜色的单行日志，其余环境输出 JSON（每行一个对象）
- 请求 ID 与用户 ID 放在 contextvars 中，HTTP 中间件和 WebSocket 网关负责设置，
  同一请求（或连接）内的所有日志自动带上
- logger.info(..., extra={...}) 的额外字段在 JSON 中归入 "extra"

使用示例：
    from kbchat.infra.logging import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("文件入库完成", extra={"file_id": 3, "chunks": 4})
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from kbchat.config import get_settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[int | None] = ContextVar("user_id", default=None)

# LogRecord 自带属性，其余属性视为 extra
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}

_QUIET_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "openai",
    "sqlalchemy.engine",
    "qdrant_client",
    "pdfminer",
    "PIL",
)


def get_request_id() -> str | None:
    return request_id_var.get()


def set_request_id(request_id: str | None) -> None:
    request_id_var.set(request_id)


def get_user_id() -> int | None:
    return user_id_var.get()


def set_user_id(user_id: int | None) -> None:
    user_id_var.set(user_id)


def _record_extra(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """
    JSON 日志

    {"timestamp": "...", "level": "INFO", "logger": "kbchat.services.files",
     "message": "...", "request_id": "...", "user_id": 1, "extra": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if (request_id := get_request_id()) is not None:
            data["request_id"] = request_id
        if (user_id := get_user_id()) is not None:
            data["user_id"] = user_id
        if record.levelno <= logging.DEBUG:
            data["location"] = f"{record.pathname}:{record.lineno}"
        if extra := _record_extra(record):
            data["extra"] = extra
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    开发环境单行日志

    2026-10-19 12:00:00 INFO     [1a2b3c4d] [u:1] kbchat.services.streaming - 开始流式回答
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        created = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        parts = [f"{created} {color}{record.levelname:8}{self.RESET}"]

        if (request_id := get_request_id()) is not None:
            parts.append(f"[{request_id[:8]}]")
        if (user_id := get_user_id()) is not None:
            parts.append(f"[u:{user_id}]")
        parts.append(f"{record.name} - {record.getMessage()}")

        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str | None = None, json_format: bool | None = None) -> None:
    """
    配置根 logger

    Args:
        level: 日志级别，默认读取 LOG_LEVEL
        json_format: 是否输出 JSON，默认读取 LOG_JSON；都未配置时只有非开发环境输出 JSON
    """
    settings = get_settings()
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    if json_format is None:
        json_format = settings.log_json
    if json_format is None:
        json_format = settings.environment not in ("dev", "development", "test")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class Stopwatch:
    """耗时统计（毫秒）"""

    def __init__(self):
        self._start = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self._start) * 1000, 2)
