"""
Structured logging setup using structlog directly.

No wrappers, just standard structlog configuration.
"""

import logging
import sys
from typing import Any, Optional

import structlog

from usage_ledger.config.loader import LoggingConfig


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """
    Setup structured logging with structlog.

    Args:
        config: Logging section of the pipeline config; defaults apply if omitted
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper())

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

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

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_audit_event(action: str, tenant_id: Optional[str] = None, **kwargs: Any) -> None:
    """
    Record an audit event.

    Audit events are just structured logs on the ``audit`` logger.
    """
    structlog.get_logger("audit").info(action, tenant_id=tenant_id, audit=True, **kwargs)
