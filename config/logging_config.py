"""
Multi-Level Logging Configuration Module

This module provides logging configuration with multiple handlers,
formatters, and logging levels. It supports structured logging, task
context propagation, performance monitoring and Prometheus instruments
for the processing engine.

Author: Development Team
Version: 1.0.0
Date: 2025-09-16
"""

import inspect
import logging
import logging.handlers
import os
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Dict, Optional

import colorlog
from prometheus_client import Counter, Gauge, Histogram
from pythonjsonlogger.json import JsonFormatter

# Context variables for task tracking
task_id_context: ContextVar[Optional[str]] = ContextVar('task_id', default=None)
location_id_context: ContextVar[Optional[str]] = ContextVar('location_id', default=None)
task_kind_context: ContextVar[Optional[str]] = ContextVar('task_kind', default=None)


# Metrics for monitoring
log_messages_total = Counter('health_engine_log_messages_total', 'Total log messages', ['level', 'module'])
error_count = Counter('health_engine_errors_total', 'Total errors', ['error_type', 'module'])
tasks_total = Counter('health_engine_tasks_total', 'Finished processing tasks', ['kind', 'status'])
task_duration = Histogram('health_engine_task_duration_seconds', 'Task execution duration', ['kind'])
queue_length_gauge = Gauge('health_engine_queue_length', 'Pending tasks in the queue')
active_tasks_gauge = Gauge('health_engine_active_tasks', 'Tasks currently running')
cache_size_gauge = Gauge('health_engine_cache_entries', 'Entries held in the cache store')
cache_lookups_total = Counter('health_engine_cache_lookups_total', 'Cache lookups', ['result'])


class ContextualFilter(logging.Filter):
    """
    Logging filter that adds task context to log records.

    Every asynchronous task body runs with its own copy of the context
    variables, so records emitted from concurrent tasks never mix.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Add contextual information to log record.

        Args:
            record: Log record to enhance

        Returns:
            True to include record in logging output
        """
        record.task_id = task_id_context.get()
        record.location_id = location_id_context.get()
        record.task_kind = task_kind_context.get()

        record.timestamp_iso = datetime.now(timezone.utc).isoformat()
        record.process_id = os.getpid()
        record.module_name = record.name.split('.')[0] if '.' in record.name else record.name

        log_messages_total.labels(level=record.levelname, module=record.module_name).inc()

        if record.levelno >= logging.ERROR:
            error_type = getattr(record, 'error_type', 'unknown')
            error_count.labels(error_type=error_type, module=record.module_name).inc()

        return True


class StructuredFormatter(logging.Formatter):
    """
    Formatter for plain-text structured log lines.
    """

    def __init__(self, include_context: bool = True):
        fmt = (
            "%(timestamp_iso)s | %(levelname)-8s | "
            "%(module_name)-12s | %(funcName)-20s | "
            "%(message)s"
        )
        if include_context:
            fmt += " | TASK:%(task_id)s LOC:%(location_id)s KIND:%(task_kind)s"
        super().__init__(fmt)

    def format(self, record: logging.LogRecord) -> str:
        for attr in ['task_id', 'location_id', 'task_kind', 'module_name']:
            if getattr(record, attr, None) is None:
                setattr(record, attr, '-')

        if not hasattr(record, 'timestamp_iso'):
            record.timestamp_iso = datetime.now(timezone.utc).isoformat()

        return super().format(record)


class PerformanceLogger:
    """
    Performance logging utility for tracking execution times.

    Provides a decorator that works for both plain and ``async def``
    callables, and a context manager for code blocks.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def log_function_performance(self, function_name: Optional[str] = None):
        """
        Decorator for logging function performance.

        Args:
            function_name: Custom function name for logging

        Returns:
            Decorator function
        """
        def decorator(func):
            func_name = function_name or func.__name__

            if inspect.iscoroutinefunction(func):
                @wraps(func)
                async def async_wrapper(*args, **kwargs):
                    start = time.perf_counter()
                    try:
                        result = await func(*args, **kwargs)
                    except Exception as e:
                        self._log_failure(func_name, start, e)
                        raise
                    self._log_success(func_name, start)
                    return result

                return async_wrapper

            @wraps(func)
            def wrapper(*args, **kwargs):
                start = time.perf_counter()
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    self._log_failure(func_name, start, e)
                    raise
                self._log_success(func_name, start)
                return result

            return wrapper
        return decorator

    def log_block_performance(self, block_name: str) -> "PerformanceContext":
        return PerformanceContext(self.logger, block_name)

    def _log_success(self, func_name: str, start: float) -> None:
        duration_ms = (time.perf_counter() - start) * 1000
        self.logger.debug(
            f"Function {func_name} completed in {duration_ms:.1f}ms",
            extra={
                'duration_ms': duration_ms,
                'function': func_name,
                'performance': True,
                'status': 'success'
            }
        )

    def _log_failure(self, func_name: str, start: float, error: Exception) -> None:
        duration_ms = (time.perf_counter() - start) * 1000
        self.logger.debug(
            f"Function {func_name} failed after {duration_ms:.1f}ms: {error}",
            extra={
                'duration_ms': duration_ms,
                'function': func_name,
                'performance': True,
                'status': 'error',
                'error_type': type(error).__name__,
            }
        )


class PerformanceContext:
    """
    Context manager for performance logging of code blocks.
    """

    def __init__(self, logger: logging.Logger, block_name: str):
        self.logger = logger
        self.block_name = block_name
        self.start_time: Optional[float] = None
        self.duration_ms: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        status = 'success' if exc_type is None else 'error'
        self.logger.debug(
            f"Block {self.block_name} finished ({status}) in {self.duration_ms:.1f}ms",
            extra={
                'duration_ms': self.duration_ms,
                'block': self.block_name,
                'performance': True,
                'status': status,
            }
        )
        return False


class LoggingManager:
    """
    Centralized logging manager for the application.

    Configures the root logger with console, rotating file, error and
    JSON handlers according to the supplied configuration dictionary.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logs_dir = Path(config.get('logs_dir', 'data/logs'))
        self.loggers: Dict[str, logging.Logger] = {}
        self.performance_loggers: Dict[str, PerformanceLogger] = {}
        self._setup_root_logger()
        self._setup_handlers()
        self._apply_module_levels()

    def _level(self) -> int:
        return getattr(logging, self.config.get('level', 'INFO').upper(), logging.INFO)

    def _setup_root_logger(self) -> None:
        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    def _setup_handlers(self) -> None:
        if self.config.get('log_to_console', True):
            self._setup_console_handler()

        if self.config.get('log_to_file', True):
            self._setup_file_handler()
            self._setup_error_file_handler()

        if self.config.get('enable_structured_logging', True):
            self._setup_json_handler()

    def _setup_console_handler(self) -> None:
        console_handler = logging.StreamHandler(sys.stdout)

        if self.config.get('console_color', True):
            color_formatter = colorlog.ColoredFormatter(
                fmt='%(log_color)s%(asctime)s | %(levelname)-8s | %(name)-24s | %(message)s',
                datefmt=self.config.get('date_format', '%Y-%m-%d %H:%M:%S'),
                log_colors={
                    'DEBUG': 'cyan',
                    'INFO': 'green',
                    'WARNING': 'yellow',
                    'ERROR': 'red',
                    'CRITICAL': 'red,bg_white',
                }
            )
            console_handler.setFormatter(color_formatter)
        else:
            console_handler.setFormatter(StructuredFormatter(include_context=False))

        console_handler.addFilter(ContextualFilter())
        console_handler.setLevel(self._level())
        logging.getLogger().addHandler(console_handler)

    def _rotating_handler(self, path: Path, max_mb: int, backups: int) -> logging.Handler:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            filename=str(path),
            maxBytes=max_mb * 1024 * 1024,
            backupCount=backups,
            encoding='utf-8'
        )

    def _setup_file_handler(self) -> None:
        file_handler = self._rotating_handler(
            Path(self.config.get('log_file_path', self.logs_dir / 'engine.log')),
            self.config.get('max_file_size_mb', 10),
            self.config.get('backup_count', 5),
        )
        file_handler.setFormatter(StructuredFormatter(include_context=self.config.get('log_context', True)))
        file_handler.addFilter(ContextualFilter())
        file_handler.setLevel(self._level())
        logging.getLogger().addHandler(file_handler)

    def _setup_error_file_handler(self) -> None:
        error_handler = self._rotating_handler(self.logs_dir / 'errors.log', 50, 10)
        error_handler.setFormatter(StructuredFormatter(include_context=True))
        error_handler.addFilter(ContextualFilter())
        error_handler.setLevel(logging.ERROR)
        logging.getLogger().addHandler(error_handler)

    def _setup_json_handler(self) -> None:
        json_handler = self._rotating_handler(self.logs_dir / 'structured.log', 20, 15)
        json_handler.setFormatter(
            JsonFormatter(
                '%(timestamp_iso)s %(levelname)s %(name)s %(funcName)s %(message)s '
                '%(task_id)s %(location_id)s %(task_kind)s',
                json_default=str,
            )
        )
        json_handler.addFilter(ContextualFilter())
        json_handler.setLevel(logging.DEBUG)
        logging.getLogger().addHandler(json_handler)

    def _apply_module_levels(self) -> None:
        for name, level in self.config.get('module_levels', {}).items():
            logging.getLogger(name).setLevel(getattr(logging, level.upper(), logging.INFO))

    def get_logger(self, name: str, level: Optional[str] = None) -> logging.Logger:
        if name not in self.loggers:
            logger = logging.getLogger(name)
            if level:
                logger.setLevel(getattr(logging, level.upper()))
            self.loggers[name] = logger

        return self.loggers[name]

    def get_performance_logger(self, name: str) -> PerformanceLogger:
        if name not in self.performance_loggers:
            self.performance_loggers[name] = PerformanceLogger(self.get_logger(name))

        return self.performance_loggers[name]

    def describe(self) -> Dict[str, Any]:
        """Summary of the configured handlers, used by health checks."""
        handlers = logging.getLogger().handlers
        return {
            'status': 'healthy' if handlers else 'degraded',
            'handlers': [type(handler).__name__ for handler in handlers],
            'level': logging.getLevelName(logging.getLogger().level),
        }


# Global logging manager instance
_logging_manager: Optional[LoggingManager] = None


def setup_logging(config: Dict[str, Any]) -> LoggingManager:
    """
    Setup application logging with provided configuration.

    Args:
        config: Logging configuration dictionary

    Returns:
        Configured logging manager instance
    """
    global _logging_manager
    _logging_manager = LoggingManager(config)
    return _logging_manager


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get logger instance for specified module.

    Falls back to a plain module logger when setup_logging() has not run,
    so library code and tests work without global configuration.
    """
    if _logging_manager is None:
        return logging.getLogger(name)

    return _logging_manager.get_logger(name, level)


def get_performance_logger(name: str) -> PerformanceLogger:
    if _logging_manager is None:
        return PerformanceLogger(logging.getLogger(name))

    return _logging_manager.get_performance_logger(name)


def set_logging_context(task_id: Optional[str] = None,
                        location_id: Optional[str] = None,
                        task_kind: Optional[str] = None) -> None:
    """
    Set logging context variables for the current task.

    Args:
        task_id: Processing task identifier
        location_id: Target location identifier
        task_kind: Task kind value
    """
    task_id_context.set(task_id)
    location_id_context.set(location_id)
    task_kind_context.set(task_kind)


def clear_logging_context() -> None:
    """Clear all context variables."""
    task_id_context.set(None)
    location_id_context.set(None)
    task_kind_context.set(None)


__all__ = [
    'ContextualFilter',
    'StructuredFormatter',
    'PerformanceLogger',
    'PerformanceContext',
    'LoggingManager',
    'setup_logging',
    'get_logger',
    'get_performance_logger',
    'set_logging_context',
    'clear_logging_context',
    'tasks_total',
    'task_duration',
    'queue_length_gauge',
    'active_tasks_gauge',
    'cache_size_gauge',
    'cache_lookups_total',
]
