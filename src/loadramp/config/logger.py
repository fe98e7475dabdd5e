import logging
import sys

import structlog

from loadramp.config.settings import settings


def setup_logging(level: str = None, fmt: str = None) -> None:
    """配置 structlog（JSON 或控制台输出）"""
    if level is None:
        level = "DEBUG" if settings.DEBUG else settings.LOG_LEVEL
    level = level.upper()
    fmt = fmt or settings.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level, logging.INFO),
    )
    # 根 logger 已有 handler 时 basicConfig 不生效，级别需单独设置
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(settings.APP_NAME)
