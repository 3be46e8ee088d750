"""Structured logging setup for the agent runtime."""

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

import structlog


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    service_name: str = "agent-runtime",
) -> None:
    """Configure stdlib logging and structlog processors."""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_runtime_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("AGENT_ENVIRONMENT", "development"),
    )


def add_runtime_context(
    logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add timestamp and agent id (when bound) to every log entry."""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    agent_id = structlog.contextvars.get_contextvars().get("agent_id")
    if agent_id and "agent_id" not in event_dict:
        event_dict["agent_id"] = agent_id

    return event_dict