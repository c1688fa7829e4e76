"""
Engine Logger

This module provides the logging interface for the learning engine, with
configurable levels, plain-text or JSON output, and context-carrying adapters
so that per-user and per-item fields travel with every record.
"""

import os
import sys
import json
import time
import logging
import datetime
import functools
import asyncio
from typing import Dict, Any, Optional, Union, Callable, TypeVar

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-34s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ROOT_LOGGER_NAME = "hybrid_srs"

F = TypeVar('F', bound=Callable[..., Any])

__all__ = [
    'configure_logger',
    'configure_from_settings',
    'get_logger',
    'LoggerAdapter',
    'JsonFormatter',
    'with_context',
    'app_logger',
    'log_execution_time'
]


class JsonFormatter(logging.Formatter):
    """
    Formatter that renders each record as one JSON object per line.

    Structured fields attached through ``extra={"data": {...}}`` (which is what
    LoggerAdapter does) are merged into the top level of the object.
    """

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        *,
        indent: Optional[int] = None
    ):
        super().__init__(fmt, datefmt)
        self.indent = indent

    def format(self, record: logging.LogRecord) -> str:
        log_object = {
            "timestamp": datetime.datetime.fromtimestamp(record.created).isoformat(),
            "name": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno
        }

        if record.exc_info:
            log_object["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        data = getattr(record, 'data', None)
        if isinstance(data, dict):
            log_object.update(data)

        return json.dumps(log_object, indent=self.indent, default=str)


def configure_logger(
    name: str = ROOT_LOGGER_NAME,
    level: Union[str, int] = logging.INFO,
    format_string: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
    use_json: bool = False,
    log_file: Optional[str] = None,
    console_output: bool = True
) -> logging.Logger:
    """
    Configure a logger with console and optional file handlers.

    Args:
        name: Logger name
        level: Log level name or number
        format_string: Log format string (ignored for JSON output)
        date_format: Date format string
        use_json: Whether to emit JSON lines
        log_file: Path to a log file, or None for no file handler
        console_output: Whether to write to stdout

    Returns:
        Configured logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers = []

    if use_json:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(format_string, date_format)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        try:
            directory = os.path.dirname(log_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except (FileNotFoundError, PermissionError) as e:
            logger.warning(f"Could not create log file {log_file}: {e}")

    return logger


def configure_from_settings(logging_config: Any) -> logging.Logger:
    """
    Reconfigure the engine logger from a LoggingConfig section.

    Args:
        logging_config: Object with ``level``, ``use_json``, ``file_path`` attributes

    Returns:
        The reconfigured engine logger
    """
    return configure_logger(
        name=ROOT_LOGGER_NAME,
        level=logging_config.level,
        use_json=logging_config.use_json,
        log_file=logging_config.file_path,
        console_output=True
    )


def get_logger(
    name: str,
    parent: Optional[logging.Logger] = None
) -> logging.Logger:
    """Get a logger by name, optionally as a child of ``parent``."""
    if parent:
        return parent.getChild(name)
    return logging.getLogger(name)


class LoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that attaches contextual fields (user id, vocabulary id,
    component) to every record under ``extra["data"]``.
    """

    def __init__(
        self,
        logger: logging.Logger,
        context: Dict[str, Any] = None
    ):
        super().__init__(logger, context or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs = kwargs.copy()
        extra = dict(kwargs.get('extra') or {})
        data = dict(extra.get('data') or {})
        if self.extra:
            data.update(self.extra)
        extra['data'] = data
        kwargs['extra'] = extra
        return msg, kwargs

    def with_context(self, **context) -> 'LoggerAdapter':
        """Return a new adapter with ``context`` merged into the current one."""
        new_context = dict(self.extra)
        new_context.update(context)
        return LoggerAdapter(self.logger, new_context)


def with_context(name: str = None, **context) -> LoggerAdapter:
    """
    Create a logger adapter with context.

    Args:
        name: Optional logger name; defaults to the engine logger
        context: Context fields

    Returns:
        Logger adapter with context
    """
    logger = get_logger(name) if name else app_logger
    return LoggerAdapter(logger, context)


def get_app_logger() -> logging.Logger:
    """Get the engine logger, configuring it from the environment on first use."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)

    if not logger.handlers:
        return configure_logger(
            name=ROOT_LOGGER_NAME,
            level=os.environ.get("HYBRID_SRS_LOG_LEVEL", "INFO"),
            use_json=os.environ.get("HYBRID_SRS_LOG_JSON", "false").lower() == "true",
            log_file=os.environ.get("HYBRID_SRS_LOG_FILE"),
            console_output=True
        )

    return logger


app_logger = get_app_logger()


def log_execution_time(logger: Optional[logging.Logger] = None) -> Callable[[F], F]:
    """
    Decorator that logs how long the wrapped function took at DEBUG level,
    and at ERROR level when it raised. Works for sync and async callables.
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed = time.perf_counter() - start_time
                (logger or get_app_logger()).error(
                    f"{func.__name__} failed after {elapsed:.3f} seconds: {e}"
                )
                raise
            elapsed = time.perf_counter() - start_time
            (logger or get_app_logger()).debug(
                f"{func.__name__} executed in {elapsed:.3f} seconds"
            )
            return result

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed = time.perf_counter() - start_time
                (logger or get_app_logger()).error(
                    f"{func.__name__} failed after {elapsed:.3f} seconds: {e}"
                )
                raise
            elapsed = time.perf_counter() - start_time
            (logger or get_app_logger()).debug(
                f"{func.__name__} executed in {elapsed:.3f} seconds"
            )
            return result

        return async_wrapper if asyncio.iscoroutinefunction(func) else wrapper
    return decorator
