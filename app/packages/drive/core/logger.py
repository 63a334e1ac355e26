"""日志配置模块：统一网盘服务的日志格式、级别与请求 ID 透传。

事件总线在工作线程中分发，线程内读不到请求上下文；``log_event`` 会把事件携带的请求 ID、
事件名与用户 ID 通过 ``extra`` 写入日志记录，过滤器不会覆盖已有的请求 ID。
"""

import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional

from .config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

# 通过 ``extra`` 附加、需要写入 JSON 日志的业务字段
_CONTEXT_FIELDS = ("event", "user_id", "node_id", "storage_key")

# 统一挂载控制台与文件两个处理器的 logger
_MANAGED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "app")

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class TZFormatter(logging.Formatter):
    """按配置时区输出时间戳；文件日志直接使用，不带颜色。"""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: D401
        dt = datetime.fromtimestamp(record.created, get_settings().timezone_info)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(sep=" ", timespec="milliseconds")


class ColorFormatter(TZFormatter):
    """ANSI 彩色格式化器：按日志级别着色，终端不支持时输出纯文本。"""

    RESET = "\033[0m"
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_colors: Optional[bool] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = sys.stderr.isatty() if use_colors is None else use_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno) if self.use_colors else None
        return f"{color}{message}{self.RESET}" if color else message


class JsonFormatter(TZFormatter):
    """单行 JSON，便于日志采集；事件日志额外带上事件名、用户与对象 key。"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class RequestIdFilter(logging.Filter):
    """补齐 ``request_id``：优先使用记录自带的值，其次取当前请求上下文。"""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id_ctx.get() or "-"
        return True


def build_logging_config() -> Dict[str, Any]:
    settings = get_settings()
    level = settings.log_level
    console_formatter = "json" if settings.log_json else "console"
    handler_names = ["default", "file"]

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"()": f"{__name__}.ColorFormatter", "fmt": LOG_FORMAT},
            "file": {"()": f"{__name__}.TZFormatter", "fmt": LOG_FORMAT},
            "json": {"()": f"{__name__}.JsonFormatter"},
        },
        "filters": {"request_id": {"()": f"{__name__}.RequestIdFilter"}},
        "handlers": {
            "default": {
                "level": level,
                "class": "logging.StreamHandler",
                "formatter": console_formatter,
                "filters": ["request_id"],
            },
            "file": {
                "level": level,
                "class": "logging.handlers.TimedRotatingFileHandler",
                "formatter": "json" if settings.log_json else "file",
                "filename": str(settings.log_file_path),
                "when": "midnight",
                "backupCount": 14,
                "encoding": "utf-8",
                "delay": True,
                "filters": ["request_id"],
            },
        },
        "loggers": {
            **{name: {"handlers": handler_names, "level": level, "propagate": False} for name in _MANAGED_LOGGERS},
            # boto3 在 DEBUG 下会输出完整请求体，固定为 WARNING
            "boto3": {"level": "WARNING"},
            "botocore": {"level": "WARNING"},
        },
        "root": {"handlers": handler_names, "level": level},
    }


def setup_logging() -> None:
    """初始化日志系统：控制台 + 按天滚动的文件，两者共享请求 ID 过滤器。"""
    get_settings().log_directory.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_logging_config())


logger = logging.getLogger("app")


def set_request_id(request_id: Optional[str]) -> None:
    _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()
