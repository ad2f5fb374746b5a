"""Logging and observability utilities for pmsync.

This module provides structured logging, performance monitoring,
and observability hooks for ID management and PM synchronization.
"""

from __future__ import annotations

import inspect
import json
import time
import logging as std_logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from functools import wraps


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# Configure structured logging
def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Setup structured logging for pmsync."""

    logger = std_logging.getLogger("pmsync")
    logger.setLevel(log_level)

    # Clear existing handlers
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    json_formatter = JsonFormatter()

    console_handler = std_logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = std_logging.FileHandler(log_file)
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(json_formatter)
        logger.addHandler(file_handler)

    logger.info("pmsync logging initialized")


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class PerformanceMonitor:
    """Monitor performance metrics for pmsync operations."""

    def __init__(self):
        self.metrics: Dict[str, List[Dict[str, Any]]] = {}

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, str]] = None) -> None:
        """Record a performance metric."""
        metric = {
            "timestamp": _now_iso(),
            "name": name,
            "value": value,
            "tags": tags or {}
        }

        self.metrics.setdefault(name, []).append(metric)

        logger = std_logging.getLogger("pmsync.performance")
        logger.debug(f"Metric recorded: {name}={value}", extra={"extra_fields": metric})

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Get recorded metrics."""
        if name:
            return {name: self.metrics.get(name, [])}
        return self.metrics.copy()

    def clear(self) -> None:
        self.metrics.clear()


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


def _record_success(operation_name: str, start_time: float) -> None:
    duration = time.time() - start_time
    performance_monitor.record_metric(
        f"{operation_name}_duration",
        duration,
        {"status": "success"}
    )
    std_logging.getLogger("pmsync.performance").debug(
        f"Completed operation: {operation_name} in {duration:.3f}s",
        extra={"extra_fields": {
            "operation": operation_name,
            "duration": duration,
            "status": "success"
        }}
    )


def _record_failure(operation_name: str, start_time: float, error: Exception) -> None:
    duration = time.time() - start_time
    performance_monitor.record_metric(
        f"{operation_name}_duration",
        duration,
        {"status": "error", "error_type": type(error).__name__}
    )
    std_logging.getLogger("pmsync.performance").error(
        f"Failed operation: {operation_name} after {duration:.3f}s - {str(error)}",
        extra={"extra_fields": {
            "operation": operation_name,
            "duration": duration,
            "status": "error",
            "error_type": type(error).__name__,
            "error_message": str(error)
        }}
    )


def log_performance(operation_name: str):
    """Decorator to log performance metrics for sync or async operations."""
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.time()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _record_failure(operation_name, start_time, e)
                    raise
                _record_success(operation_name, start_time)
                return result

            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _record_failure(operation_name, start_time, e)
                raise
            _record_success(operation_name, start_time)
            return result

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Context manager to log operations with custom fields."""
    logger = std_logging.getLogger("pmsync.operations")
    start_time = time.time()

    logger.debug(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields
    }})

    try:
        yield

        duration = time.time() - start_time
        logger.debug(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
            "operation": operation_name,
            "status": "completed",
            "duration": duration,
            **extra_fields
        }})

    except Exception as e:
        duration = time.time() - start_time
        logger.error(f"Failed operation: {operation_name} after {duration:.3f}s - {str(e)}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields
        }})

        raise


class ObservabilityHooks:
    """Observability hooks for feature ID and PM sync events."""

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., Any]]] = {}
        self.logger = std_logging.getLogger("pmsync.observability")

    def register_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        """Register a callback for a specific event type."""
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def unregister_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        callbacks = self.hooks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def trigger_hooks(self, event_type: str, **data) -> None:
        """Trigger all callbacks for a specific event type."""
        if event_type in self.hooks:
            self.logger.debug(f"Triggering {len(self.hooks[event_type])} hooks for event: {event_type}")
            for hook in self.hooks[event_type]:
                try:
                    hook(**data)
                except Exception as e:
                    self.logger.error(f"Hook failed for event {event_type}: {e}")

    def log_sync_event(self, event_type: str, feature_id: Optional[str] = None, **data) -> None:
        """Log a sync event and trigger hooks."""
        event_data = {
            "timestamp": _now_iso(),
            "event_type": event_type,
            "feature_id": feature_id,
            **data
        }

        self.logger.info(f"Sync event: {event_type}", extra={"extra_fields": event_data})

        # event_type is passed positionally, keep it out of the kwargs
        hook_data = {k: v for k, v in event_data.items() if k != "event_type"}
        self.trigger_hooks(event_type, **hook_data)


# Global observability hooks instance
observability_hooks = ObservabilityHooks()


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields):
    """Log an error with rich context information."""
    logger = std_logging.getLogger("pmsync.errors")

    error_data = {
        "timestamp": _now_iso(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields
    }

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {str(error)}",
        extra={"extra_fields": error_data},
        exc_info=(type(error), error, error.__traceback__)
    )


# Convenience functions for common events
def log_feature_created(feature_id: str, **extra_fields):
    """Log creation of a feature or sub-issue ID."""
    observability_hooks.log_sync_event("feature_created", feature_id=feature_id, **extra_fields)


def log_external_linked(feature_id: str, external_id: str, pm_tool: Optional[str], **extra_fields):
    """Log an external ID being linked to a local ID."""
    observability_hooks.log_sync_event(
        "external_linked",
        feature_id=feature_id,
        external_id=external_id,
        pm_tool=pm_tool,
        **extra_fields
    )


def log_status_mirrored(feature_id: str, status: str, **extra_fields):
    """Log a status change written to the local mirror."""
    observability_hooks.log_sync_event("status_mirrored", feature_id=feature_id, status=status, **extra_fields)


def log_external_sync(feature_id: str, pm_tool: str, succeeded: bool, **extra_fields):
    """Log the outcome of a background external sync."""
    event = "external_sync_succeeded" if succeeded else "external_sync_failed"
    observability_hooks.log_sync_event(event, feature_id=feature_id, pm_tool=pm_tool, **extra_fields)


def log_retry_event(event_type: str, feature_id: str, **extra_fields):
    """Log a retry queue event (queued, replayed, retained)."""
    observability_hooks.log_sync_event(f"retry_{event_type.lower()}", feature_id=feature_id, **extra_fields)
