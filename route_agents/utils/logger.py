"""
JSON event logging for agents and the coordinator.

Every record is one JSON object per line on stdout: an event name plus
structured fields. Agents bind their id once so each record they emit can
be filtered per agent.
"""
import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from route_agents.config import settings


class StructuredLogger:
    """
    Structured logger that outputs JSON-formatted logs.

    Usage:
        logger = get_logger(__name__)
        logger.info("consensus_started", request_id="req-1", routes=2)

        agent_logger = logger.bind(agent_id="risk-assessment-agent")
        agent_logger.warning("message_retry_scheduled", attempt=1, delay=1.0)

    Output:
        {"timestamp": "2025-09-30T10:00:00", "level": "INFO", "logger": "...", "message": "consensus_started", ...}
    """

    def __init__(self, name: str, level: str = "INFO", context: Optional[Dict[str, Any]] = None):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level))
        self.context: Dict[str, Any] = dict(context or {})

        # Avoid duplicate handlers
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a logger sharing the same sink with extra fixed fields."""
        child = StructuredLogger.__new__(StructuredLogger)
        child.name = self.name
        child.logger = self.logger
        child.context = {**self.context, **fields}
        return child

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        numeric_level = getattr(logging, level)
        if not self.logger.isEnabledFor(numeric_level):
            return

        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "logger": self.name,
            "message": message,
        }
        log_entry.update(self.context)
        log_entry.update(kwargs)

        self.logger.log(numeric_level, json.dumps(log_entry, default=str))

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log INFO level message with structured fields."""
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log WARNING level message with structured fields."""
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, error: Optional[BaseException] = None, **kwargs: Any) -> None:
        """
        Log ERROR level message with structured fields.

        Args:
            message: Event name
            error: Optional exception object
            **kwargs: Additional fields
        """
        if error is not None:
            kwargs["error_type"] = type(error).__name__
            kwargs["error_message"] = str(error)

        self._log("ERROR", message, **kwargs)

    def critical(self, message: str, error: Optional[BaseException] = None, **kwargs: Any) -> None:
        if error is not None:
            kwargs["error_type"] = type(error).__name__
            kwargs["error_message"] = str(error)

        self._log("CRITICAL", message, **kwargs)


# One logger per module name
_loggers: Dict[str, StructuredLogger] = {}


def get_logger(name: str, level: Optional[str] = None) -> StructuredLogger:
    """
    Get or create a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the module)
        level: Log level (DEBUG, INFO, WARNING, ERROR); defaults to settings.log_level

    Returns:
        StructuredLogger instance
    """
    if name not in _loggers:
        _loggers[name] = StructuredLogger(name, level or settings.log_level)

    return _loggers[name]
