"""结构化日志配置模块。

使用 structlog 提供结构化日志支持，支持 JSON 和控制台两种输出格式。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from signal_cycle.config import LogFormat, Settings, get_settings

# httpx 在 INFO 级别记录每个请求
_QUIET_LOGGERS = ("httpx", "httpcore")


def setup_logging(settings: Settings | None = None) -> None:
    """配置结构化日志系统。

    根据配置设置日志级别和输出格式，并压低 HTTP 客户端的逐请求日志。
    """
    settings = settings or get_settings()

    # 设置标准库日志级别
    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    # 共享处理器
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    # 根据格式选择渲染器
    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器。

    Args:
        name: 日志记录器名称。如果为 None，则使用调用模块名。

    Returns:
        结构化日志记录器实例。
    """
    return structlog.get_logger(name)


def bind_cycle_context(**values: Any) -> None:
    """把周期级字段（cycle_id、mode 等）绑定到之后的所有日志。"""
    structlog.contextvars.bind_contextvars(**values)


def clear_cycle_context() -> None:
    """清除周期级日志上下文。"""
    structlog.contextvars.clear_contextvars()


# 便捷日志函数
def log_trade_signal(
    logger: structlog.stdlib.BoundLogger,
    *,
    asset: str,
    action: str,
    tier: str,
    confidence: float,
    **kwargs: Any,
) -> None:
    """记录交易信号。"""
    logger.info(
        "trade_signal",
        asset=asset,
        action=action,
        tier=tier,
        confidence=round(confidence, 4),
        **kwargs,
    )


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    asset: str,
    side: str,
    quantity: float,
    price: float | None = None,
    order_id: str | None = None,
    status: str = "submitted",
    **kwargs: Any,
) -> None:
    """记录订单执行。"""
    level = "info" if status in {"FILLED", "PARTIAL_FILLED", "submitted"} else "warning"
    getattr(logger, level)(
        "order_execution",
        asset=asset,
        side=side,
        quantity=quantity,
        price=price,
        order_id=order_id,
        status=status,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录风控事件。放行类动作记为 info，其余记为 warning。"""
    level = "info" if action.startswith("allow") else "warning"
    getattr(logger, level)(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )


def log_reconciliation(
    logger: structlog.stdlib.BoundLogger,
    *,
    positions_updated: int,
    positions_closed: int,
    **kwargs: Any,
) -> None:
    """记录对账结果。"""
    level = "info" if positions_updated == 0 and positions_closed == 0 else "warning"
    getattr(logger, level)(
        "reconciliation",
        positions_updated=positions_updated,
        positions_closed=positions_closed,
        **kwargs,
    )
