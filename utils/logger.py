"""
Kestrel Logger

Centralized Loguru-based logging with structured output, context binding,
file rotation and compression.
"""

import sys
import json
from decimal import Decimal
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone

from loguru import logger

from config.settings import get_settings
from core.models import format_usd


def setup_logging(log_level: Optional[str] = None) -> None:
    """
    Configure Loguru logging with enhanced formatting and file rotation.

    Args:
        log_level: Override default log level from settings
    """
    settings = get_settings()

    # Remove default handler
    logger.remove()

    level = log_level or settings.log_level.value

    if settings.log_json_format:
        def json_formatter(record):
            json_record = {
                "timestamp": record["time"].isoformat(),
                "level": record["level"].name,
                "logger": record["name"],
                "function": record["function"],
                "line": record["line"],
                "message": record["message"],
            }

            if record["extra"]:
                json_record.update(record["extra"])

            # loguru treats the formatter result as a template
            record["extra"]["serialized"] = json.dumps(json_record, default=str)
            return "{extra[serialized]}\n"

        logger.add(
            sys.stderr,
            format=json_formatter,
            level=level,
            backtrace=True,
            diagnose=not settings.is_production()
        )
    else:
        console_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )

        logger.add(
            sys.stderr,
            format=console_format,
            level=level,
            colorize=True,
            backtrace=True,
            diagnose=not settings.is_production()
        )

    if settings.log_to_file:
        log_path = Path(settings.log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_format = (
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{name}:{function}:{line} | "
            "{extra} | "
            "{message}"
        )

        logger.add(
            str(log_path),
            format=file_format,
            level=level,
            rotation=settings.log_rotation_size,
            retention=f"{settings.log_retention_days} days",
            compression=settings.log_compression,
            backtrace=True,
            diagnose=not settings.is_production(),
            enqueue=True  # Thread-safe logging
        )

    logger.info(f"{settings.app_name} v{settings.version} logging initialized - Level: {level}")
    logger.info(f"Environment: {settings.environment.value}")

    if settings.debug:
        logger.debug("Debug mode enabled")


def get_logger(name: str = None):
    """
    Get a logger instance with optional name binding.

    Args:
        name: Logger name for identification and filtering

    Returns:
        Configured logger instance with context binding
    """
    if name:
        return logger.bind(component=name)
    return logger


class ContextLogger:
    """
    Context-aware logger for ledger and alert operations.

    Provides structured logging with domain-specific context and
    automatic field enrichment.
    """

    def __init__(self, component: str):
        """
        Initialize context logger.

        Args:
            component: Component name (e.g., 'ledger', 'alerts', 'market')
        """
        self.component = component
        self.logger = logger.bind(component=component)

    def trade(self, message: str, instrument: str = None, **kwargs):
        """Log trading-related messages with trade context."""
        context = {"event_type": "trade", "instrument": instrument, **kwargs}
        self.logger.bind(**context).info(f"🔄 TRADE: {message}")

    def alert(self, message: str, rule_id: str = None, **kwargs):
        """Log alert rule lifecycle messages."""
        context = {"event_type": "alert", "rule_id": rule_id, **kwargs}
        self.logger.bind(**context).info(f"🔔 ALERT: {message}")

    def market(self, message: str, **kwargs):
        """Log market data messages."""
        context = {"event_type": "market", **kwargs}
        self.logger.bind(**context).debug(f"📊 MARKET: {message}")

    def storage(self, message: str, key: str = None, level: str = "DEBUG", **kwargs):
        """Log persistence messages."""
        context = {"event_type": "storage", "key": key, **kwargs}
        bound = self.logger.bind(**context)

        if level.upper() == "ERROR":
            bound.error(f"💾 STORAGE: {message}")
        elif level.upper() == "WARNING":
            bound.warning(f"💾 STORAGE: {message}")
        else:
            bound.debug(f"💾 STORAGE: {message}")

    def system(self, message: str, level: str = "INFO", **kwargs):
        """Log system-related messages with system context."""
        context = {"event_type": "system", "system_level": level, **kwargs}
        bound = self.logger.bind(**context)

        if level.upper() == "CRITICAL":
            bound.critical(f"💥 SYSTEM: {message}")
        elif level.upper() == "ERROR":
            bound.error(f"💥 SYSTEM: {message}")
        elif level.upper() == "WARNING":
            bound.warning(f"💥 SYSTEM: {message}")
        else:
            bound.info(f"💥 SYSTEM: {message}")

    def debug(self, message: str, **kwargs):
        """Log debug messages with context."""
        if kwargs:
            self.logger.bind(**kwargs).debug(message)
        else:
            self.logger.debug(message)

    def info(self, message: str, **kwargs):
        """Log info messages with context."""
        if kwargs:
            self.logger.bind(**kwargs).info(message)
        else:
            self.logger.info(message)

    def warning(self, message: str, **kwargs):
        """Log warning messages with context."""
        if kwargs:
            self.logger.bind(**kwargs).warning(message)
        else:
            self.logger.warning(message)

    def error(self, message: str, **kwargs):
        """Log error messages with context."""
        if kwargs:
            self.logger.bind(**kwargs).error(message)
        else:
            self.logger.error(message)

    def exception(self, message: str, **kwargs):
        """Log exception with traceback."""
        if kwargs:
            self.logger.bind(**kwargs).exception(message)
        else:
            self.logger.exception(message)


def log_trade(
    book: str,
    side: str,
    instrument: str,
    quantity: Decimal,
    price: Decimal,
    cash_balance: Decimal,
    leverage: int = 1,
    **kwargs
) -> None:
    """
    Log trade execution with structured data.

    Args:
        book: spot or leveraged
        side: buy or sell
        instrument: Instrument id
        quantity: Units traded
        price: Execution price
        cash_balance: Cash balance after the trade
        leverage: Leverage multiplier (leveraged book only)
        **kwargs: Additional context
    """
    value = quantity * price
    context = {
        "event_type": "trade_execution",
        "book": book,
        "side": side,
        "instrument": instrument,
        "quantity": str(quantity),
        "price": str(price),
        "value": str(value),
        "leverage": leverage,
        "cash_balance": str(cash_balance),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **kwargs
    }

    leverage_text = f" x{leverage}" if leverage > 1 else ""
    logger.bind(**context).info(
        f"🔄 TRADE EXECUTED: [{book}] {side.upper()} {quantity} {instrument} @ {format_usd(price)}"
        f"{leverage_text} (Value: {format_usd(value)}, Cash: {format_usd(cash_balance)})"
    )


def log_alert(
    rule_id: str,
    instrument: str,
    direction: str,
    target_price: Decimal,
    price: Decimal,
    **kwargs
) -> None:
    """
    Log a fired price alert with structured data.

    Args:
        rule_id: Alert rule id
        instrument: Instrument id
        direction: Above or Below
        target_price: Rule threshold
        price: Price that satisfied the rule
        **kwargs: Additional context
    """
    context = {
        "event_type": "alert_fired",
        "rule_id": rule_id,
        "instrument": instrument,
        "direction": direction,
        "target_price": str(target_price),
        "price": str(price),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **kwargs
    }

    logger.bind(**context).info(
        f"🔔 ALERT FIRED: {instrument} {direction.lower()} {format_usd(target_price)} (now {format_usd(price)})"
    )


# Pre-configured component loggers
core_logger = ContextLogger("core")
ledger_logger = ContextLogger("ledger")
alert_logger = ContextLogger("alerts")
market_logger = ContextLogger("market")
storage_logger = ContextLogger("storage")
notify_logger = ContextLogger("notify")
