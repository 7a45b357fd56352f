"""
日志配置

控制台输出带颜色的单行日志，LOG_DIR 配置后额外写入两份 JSON 日志：
app.log 记录全部级别，error.log 只记录 WARNING 及以上，均按 10MB 轮转。
log_alert 用于上游配额耗尽、聚合中止这类需要运维介入的事件。
"""
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

# LogRecord 自带属性，不计入 extra
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'asctime', 'taskName',
])

_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5

# 第三方库只保留必要输出
_QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
    "fastapi": logging.INFO,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


def _jsonable(value):
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """JSON 行格式，每条记录一行

    {"timestamp": "...Z", "level": "WARNING", "logger": "metaads.services.aggregation_service",
     "message": "...", "extra": {"entity_id": "..."}}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload = {
            "timestamp": created.strftime('%Y-%m-%dT%H:%M:%S.') + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.levelno <= logging.DEBUG:
            payload["location"] = f"{record.filename}:{record.lineno}"
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # logger.xxx(..., extra={...}) 传入的字段
        extra = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra:
            payload["extra"] = extra

        return json.dumps(payload, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    """控制台格式：时间 级别 [模块] 消息"""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_color: bool = True):
        super().__init__(datefmt='%Y-%m-%d %H:%M:%S')
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8}"
        if self.use_color and record.levelno in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelno]}{level}{self.RESET}"

        name = record.name
        if name.startswith('metaads.'):
            name = name[len('metaads.'):]

        line = f"{self.formatTime(record, self.datefmt)} {level} [{name}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _rotating_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter())
    return handler


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: str = "INFO",
    enable_file_handlers: bool = True,
) -> logging.Logger:
    """配置根日志记录器，可重复调用（每次先清空已有处理器）"""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(ReadableFormatter(use_color=sys.stdout.isatty()))
    root.addHandler(console)

    if enable_file_handlers and log_dir:
        log_path = Path(log_dir)
        try:
            log_path.mkdir(parents=True, exist_ok=True)
            root.addHandler(_rotating_handler(log_path / "app.log", logging.DEBUG))
            root.addHandler(_rotating_handler(log_path / "error.log", logging.WARNING))
        except OSError as e:
            root.warning(f"无法创建文件日志处理器: {e}")

    for name, logger_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(logger_level)

    return root


class AlertLevel:
    """告警级别"""
    P0_CRITICAL = "P0"  # 服务不可用
    P1_URGENT = "P1"    # 某个账户的数据拉取失败
    P2_WARNING = "P2"   # 配额等需要留意的情况


_ALERT_LOG_LEVELS = {
    AlertLevel.P0_CRITICAL: logging.CRITICAL,
    AlertLevel.P1_URGENT: logging.ERROR,
}


def log_alert(
    logger: logging.Logger,
    level: str,
    title: str,
    message: str,
    context: Optional[dict] = None,
    suggested_actions: Optional[list] = None
):
    """
    记录一条告警，告警级别和上下文写入 extra，JSON 日志里可直接检索

    用法:
        log_alert(logger, AlertLevel.P1_URGENT, "聚合拉取中止",
                  "广告系列列表获取失败：访问令牌无效",
                  context={"account_id": "act_123", "error_code": 190},
                  suggested_actions=["让用户重新登录 Facebook"])
    """
    extra = {"alert_level": level, "alert_title": title}
    if context:
        extra["context"] = context
    if suggested_actions:
        extra["suggested_actions"] = suggested_actions

    logger.log(
        _ALERT_LOG_LEVELS.get(level, logging.WARNING),
        f"[{level}] {title}: {message}",
        extra=extra,
    )
