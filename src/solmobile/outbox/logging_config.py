"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出

日志事件中的密钥类字段统一脱敏，规则与诊断请求头一致。
"""

import logging
import os

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from solmobile.transport.diagnostics import REDACTED, is_sensitive_header

# 第三方库默认只输出 WARNING 以上，避免每次请求刷屏
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def redact_secrets(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    """把 authorization / token / api_key 等字段的值替换为 <redacted>"""
    for key in list(event_dict):
        if key != "event" and is_sensitive_header(key):
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """初始化 structlog 配置

    Args:
        log_format: "json" 或 "dev"；为 None 时读取 SOL_LOG_FORMAT（默认 dev）
        log_level: 日志级别；为 None 时读取 SOL_LOG_LEVEL（默认 INFO）
    """
    log_format = log_format or os.environ.get("SOL_LOG_FORMAT", "dev")
    level = getattr(
        logging,
        (log_level or os.environ.get("SOL_LOG_LEVEL", "INFO")).upper(),
        logging.INFO,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # httpx 等第三方库的标准库日志走同一格式
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if level <= logging.DEBUG else logging.WARNING)
