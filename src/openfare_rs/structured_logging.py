"""
Structured logging configuration for openfare-rs.

Emits one JSON object per record on stderr so rendered reports written to
stdout stay clean.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_RESERVED_ATTRIBUTES = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "getMessage",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRIBUTES:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class EventLogger:
    """Structured logger for named events."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(f"openfare_rs.{name}")
        self.handler = logging.StreamHandler(sys.stderr)
        self.handler.setFormatter(StructuredFormatter())
        self.logger.addHandler(self.handler)
        self.logger.propagate = False
        self.context: Dict[str, Any] = {}

    def set_context(self, **context: Any) -> None:
        self.context = {k: v for k, v in context.items() if v is not None}

    def clear_context(self) -> None:
        self.context.clear()

    def _log(self, level: str, event_type: str, **kwargs) -> None:
        log_data = {"event_type": event_type, **self.context, **kwargs}
        getattr(self.logger, level)(event_type, extra=log_data)

    def info(self, event_type: str, **kwargs) -> None:
        self._log("info", event_type, **kwargs)

    def warning(self, event_type: str, **kwargs) -> None:
        self._log("warning", event_type, **kwargs)

    def error(self, event_type: str, **kwargs) -> None:
        self._log("error", event_type, **kwargs)

    def debug(self, event_type: str, **kwargs) -> None:
        self._log("debug", event_type, **kwargs)


# Global logger instances
_graph_logger = EventLogger("graph")
_registry_logger = EventLogger("registry")
_aggregator_logger = EventLogger("aggregator")
_report_logger = EventLogger("report")

_ALL_LOGGERS = (_graph_logger, _registry_logger, _aggregator_logger, _report_logger)


def get_aggregator_logger() -> EventLogger:
    return _aggregator_logger


def get_report_logger() -> EventLogger:
    return _report_logger


def log_graph_built(node_count: int, edge_count: int, root_count: int) -> None:
    """Log a successfully built dependency graph."""
    _graph_logger.info(
        "graph_built",
        node_count=node_count,
        edge_count=edge_count,
        root_count=root_count,
    )


def log_profile_fetch(
    package_name: str,
    version: str,
    found: bool,
    attempts: int,
    response_time_ms: Optional[float] = None,
) -> None:
    """Log the outcome of a single profile lookup."""
    log_data: Dict[str, Any] = {
        "package_name": package_name,
        "version": version,
        "profile_found": found,
        "attempts": attempts,
    }
    if response_time_ms is not None:
        log_data["response_time_ms"] = response_time_ms

    _registry_logger.debug("profile_fetch_completed", **log_data)


def log_aggregation_complete(
    root: str,
    visited: int,
    fee_rows: int,
    warnings: int,
    duration_ms: int,
) -> None:
    """Log aggregation completion."""
    log_method = _aggregator_logger.warning if warnings else _aggregator_logger.info
    log_method(
        "aggregation_completed",
        root=root,
        visited_packages=visited,
        fee_rows=fee_rows,
        warning_count=warnings,
        duration_ms=duration_ms,
    )


def set_run_context(lockfile: Optional[str] = None, root: Optional[str] = None) -> None:
    """Set context fields shared by every component logger."""
    for logger in _ALL_LOGGERS:
        logger.set_context(lockfile=lockfile, root=root)


def clear_run_context() -> None:
    for logger in _ALL_LOGGERS:
        logger.clear_context()


def configure_logging(log_level: str = "WARNING", enable_json: bool = True) -> None:
    """Configure logging for the application."""
    level = getattr(logging, log_level.upper(), logging.WARNING)

    formatter: logging.Formatter = (
        StructuredFormatter()
        if enable_json
        else logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    for logger in _ALL_LOGGERS:
        logger.logger.setLevel(level)
        logger.handler.setFormatter(formatter)

    # Error handler records go through the package logger
    package_logger = logging.getLogger("openfare_rs")
    package_logger.setLevel(level)
    if not package_logger.handlers:
        package_logger.addHandler(logging.StreamHandler(sys.stderr))
    for handler in package_logger.handlers:
        handler.setFormatter(formatter)


configure_logging()
