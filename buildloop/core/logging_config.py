"""
buildloop - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging
"""

import logging
import sys
import json
import traceback
from datetime import datetime
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict
from contextvars import ContextVar

from buildloop.core.config import settings


# Context variable for session tracing; asyncio tasks inherit it on creation
session_id_var: ContextVar[str] = ContextVar('session_id', default='')

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName', 'session_id',
}


def get_session_id() -> str:
    """Get current session ID from context"""
    return session_id_var.get() or ''


def set_session_id(session_id: str) -> None:
    """Set session ID in context"""
    session_id_var.set(session_id)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production.
    One object per line so log shippers can parse it without multiline rules.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        session_id = get_session_id()
        if session_id:
            log_data["session_id"] = session_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """Readable formatter for development that includes the session id"""

    def format(self, record: logging.LogRecord) -> str:
        record.session_id = get_session_id() or '-'
        return super().format(record)


class BuildLoopLogger(logging.Logger):
    """
    Custom logger with convenience methods for structured logging
    """

    def log_agent_event(self, agent_name: str, event: str,
                        tokens_used: int = 0, **kwargs) -> None:
        """Log generation/agent events"""
        self.info(
            f"Agent {agent_name}: {event}" +
            (f" (tokens: {tokens_used})" if tokens_used else ""),
            extra={
                "event_type": "agent",
                "agent_name": agent_name,
                "agent_event": event,
                "tokens_used": tokens_used,
                **kwargs
            }
        )

    def log_error_with_context(self, error: Exception, context: str = None,
                               **kwargs) -> None:
        """Log error with full context"""
        self.error(
            f"Error in {context}: {type(error).__name__}: {str(error)}",
            exc_info=True,
            extra={
                "event_type": "error",
                "error_type": type(error).__name__,
                "error_message": str(error),
                "error_context": context,
                **kwargs
            }
        )

    def log_performance(self, operation: str, duration_ms: float,
                        threshold_ms: float = 1000, **kwargs) -> None:
        """Log performance metrics, warn if over threshold"""
        level = logging.WARNING if duration_ms > threshold_ms else logging.DEBUG
        self.log(
            level,
            f"Performance: {operation} took {duration_ms:.2f}ms" +
            (f" (threshold: {threshold_ms}ms)" if duration_ms > threshold_ms else ""),
            extra={
                "event_type": "performance",
                "operation": operation,
                "duration_ms": duration_ms,
                "threshold_ms": threshold_ms,
                "exceeded_threshold": duration_ms > threshold_ms,
                **kwargs
            }
        )


def _file_handler(formatter: logging.Formatter, backup_count: int) -> RotatingFileHandler:
    log_file = Path(settings.LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=10485760,  # 10MB
        backupCount=backup_count
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> BuildLoopLogger:
    """Setup logging configuration based on environment"""
    logging.setLoggerClass(BuildLoopLogger)

    logger = logging.getLogger("buildloop")
    logger.__class__ = BuildLoopLogger
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    logger.handlers.clear()

    is_production = settings.ENVIRONMENT == "production"

    if is_production:
        json_formatter = JSONFormatter()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(json_formatter)
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            logger.addHandler(_file_handler(json_formatter, backup_count=10))
    else:
        detailed_format = (
            "%(asctime)s | %(levelname)-8s | [%(session_id)s] | "
            "%(funcName)s:%(lineno)d | %(message)s"
        )
        simple_format = "%(levelname)-8s | %(message)s"

        # stderr keeps the console free for CLI output
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(ContextualFormatter(simple_format))
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            logger.addHandler(_file_handler(ContextualFormatter(detailed_format), backup_count=5))

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)

    logger.debug(
        "Logging initialized",
        extra={
            "environment": settings.ENVIRONMENT,
            "log_level": settings.LOG_LEVEL,
            "json_logging": is_production
        }
    )

    return logger


logger: BuildLoopLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'get_session_id',
    'set_session_id',
    'BuildLoopLogger',
]
