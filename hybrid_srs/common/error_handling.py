"""
Error Handling for the Learning Engine

This module provides:
1. The engine exception hierarchy, one class per failure the HTTP layer distinguishes
2. Retry with exponential backoff and jitter for transient dependency failures
3. Bounded-time execution of dependency calls
4. Structured error logging and API error payloads
"""

import time
import logging
import traceback
import asyncio
import random
import functools
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union, cast
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hybrid_srs.common.logger import app_logger

T = TypeVar('T')
F = TypeVar('F', bound=Callable)

logger = app_logger.getChild("common.error_handling")


class ErrorSeverity(Enum):
    """Severity levels for errors"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCode(Enum):
    """Error codes surfaced by the engine"""
    UNKNOWN_ERROR = "unknown_error"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND_ERROR = "not_found_error"
    FEATURE_DISABLED = "feature_disabled"
    DEPENDENCY_TIMEOUT = "dependency_timeout"
    DIMENSION_MISMATCH = "dimension_mismatch"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    SEARCH_UNAVAILABLE = "search_unavailable"
    EXTERNAL_SERVICE_ERROR = "external_service_error"
    STORAGE_ERROR = "storage_error"


class ErrorInfo(BaseModel):
    """Structured information about an error"""
    model_config = ConfigDict(use_enum_values=True)

    code: ErrorCode
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Optional[Dict[str, Any]] = None
    exception_type: Optional[str] = None
    stack_trace: Optional[List[str]] = None
    context: Optional[Dict[str, Any]] = None

    @field_validator('stack_trace', mode='before')
    @classmethod
    def split_stack_trace(cls, v):
        if isinstance(v, str):
            return v.splitlines()
        return v


class EngineError(Exception):
    """Base exception class for all engine errors"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.details = details or {}
        self.cause = cause
        self.context = context or {}
        self.timestamp = datetime.now()

    def to_error_info(self, include_stack_trace: bool = False) -> ErrorInfo:
        """Convert the exception to an ErrorInfo object"""
        details = dict(self.details)
        if self.cause is not None:
            details["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }

        return ErrorInfo(
            code=self.code,
            message=self.message,
            timestamp=self.timestamp,
            severity=self.severity,
            details=details,
            exception_type=type(self).__name__,
            stack_trace=traceback.format_exc() if include_stack_trace else None,
            context=self.context
        )

    def to_dict(self, include_stack_trace: bool = False) -> Dict[str, Any]:
        return self.to_error_info(include_stack_trace).model_dump(mode="json")

    def __str__(self) -> str:
        base_str = f"{self.code.value}: {self.message}"
        if self.details:
            base_str += f" (details: {self.details})"
        if self.cause:
            base_str += f" caused by {type(self.cause).__name__}: {self.cause}"
        return base_str


class ValidationError(EngineError):
    """Raised when a request or argument is malformed"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if field is not None:
            details["field"] = field
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )


class NotFoundError(EngineError):
    """Raised when a resource is required but absent"""

    def __init__(
        self,
        resource: str,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["resource"] = resource
        details["resource_id"] = resource_id
        super().__init__(
            message=f"{resource} with ID {resource_id} not found",
            code=ErrorCode.NOT_FOUND_ERROR,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )


class FeatureDisabledError(EngineError):
    """
    Raised when a caller asks for a feature that is switched off.

    Distinct from an empty result: the caller is told the capability is
    unavailable by configuration, not that nothing matched.
    """

    def __init__(
        self,
        feature: str,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["feature"] = feature
        super().__init__(
            message=f"Feature '{feature}' is disabled",
            code=ErrorCode.FEATURE_DISABLED,
            severity=ErrorSeverity.INFO,
            details=details,
            context=context
        )


class DependencyTimeoutError(EngineError):
    """Raised when a dependency call exceeds its time budget"""

    def __init__(
        self,
        service: str,
        operation: str,
        timeout_seconds: float,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["service"] = service
        details["operation"] = operation
        details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message=f"Operation {operation} on {service} timed out after {timeout_seconds} seconds",
            code=ErrorCode.DEPENDENCY_TIMEOUT,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )


class DimensionMismatchError(EngineError):
    """Raised when two vectors of different dimensions are compared"""

    def __init__(
        self,
        expected: int,
        actual: int,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=f"Vector dimension mismatch: {expected} != {actual}",
            code=ErrorCode.DIMENSION_MISMATCH,
            severity=ErrorSeverity.WARNING,
            details={"expected": expected, "actual": actual},
            context=context
        )


class ConcurrencyConflictError(EngineError):
    """Raised when an optimistic version check keeps failing"""

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected_version: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["entity"] = entity
        details["entity_id"] = entity_id
        if expected_version is not None:
            details["expected_version"] = expected_version
        super().__init__(
            message=f"Concurrent modification of {entity} {entity_id}",
            code=ErrorCode.CONCURRENCY_CONFLICT,
            severity=ErrorSeverity.WARNING,
            details=details,
            context=context
        )


class SearchUnavailableError(EngineError):
    """Raised when search is enabled but cannot be served right now"""

    def __init__(
        self,
        message: str = "Vector search is temporarily unavailable",
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code=ErrorCode.SEARCH_UNAVAILABLE,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )


class ExternalServiceError(EngineError):
    """Raised when a remote provider (e.g. an embedding API) fails"""

    def __init__(
        self,
        service: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["service"] = service
        details["operation"] = operation
        super().__init__(
            message=f"Operation {operation} on {service} failed",
            code=ErrorCode.EXTERNAL_SERVICE_ERROR,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )


class StorageError(EngineError):
    """Raised when a repository operation fails"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code=ErrorCode.STORAGE_ERROR,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )


def convert_exception(
    exception: Exception,
    default_message: str = "An unexpected error occurred",
    default_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
    context: Optional[Dict[str, Any]] = None
) -> EngineError:
    """
    Convert an arbitrary exception to an EngineError.

    EngineErrors pass through unchanged apart from merging ``context``.
    """
    if isinstance(exception, EngineError):
        if context:
            exception.context.update(context)
        return exception

    return EngineError(
        message=str(exception) or default_message,
        code=default_code,
        cause=exception,
        context=context
    )


def retry(
    max_retries: int = 3,
    retry_delay: float = 0.1,
    backoff_factor: float = 2.0,
    jitter: float = 0.1,
    retry_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    ignore_exceptions: Tuple[Type[Exception], ...] = (),
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
):
    """
    Decorator for retrying functions when exceptions occur.

    Args:
        max_retries: Maximum number of retries after the first attempt
        retry_delay: Initial delay between retries in seconds
        backoff_factor: Factor to increase delay with each retry
        jitter: Random jitter factor applied to each delay
        retry_exceptions: Exception types that trigger a retry
        ignore_exceptions: Exception types that are re-raised immediately
        on_retry: Optional callback ``(attempt, exception, delay)`` before each retry

    Returns:
        Decorated function
    """
    def next_delay(delay: float) -> float:
        return max(0.0, delay * (1 + random.uniform(-jitter, jitter)))

    def decorator(func: F) -> F:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                retries = 0
                delay = retry_delay
                while True:
                    try:
                        return await func(*args, **kwargs)
                    except ignore_exceptions:
                        raise
                    except retry_exceptions as e:
                        retries += 1
                        if retries > max_retries:
                            raise
                        actual_delay = next_delay(delay)
                        if on_retry:
                            on_retry(retries, e, actual_delay)
                        logger.warning(
                            f"Retry {retries}/{max_retries} for {func.__name__} "
                            f"after {actual_delay:.2f}s due to {type(e).__name__}: {e}"
                        )
                        await asyncio.sleep(actual_delay)
                        delay *= backoff_factor

            return cast(F, async_wrapper)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            retries = 0
            delay = retry_delay
            while True:
                try:
                    return func(*args, **kwargs)
                except ignore_exceptions:
                    raise
                except retry_exceptions as e:
                    retries += 1
                    if retries > max_retries:
                        raise
                    actual_delay = next_delay(delay)
                    if on_retry:
                        on_retry(retries, e, actual_delay)
                    logger.warning(
                        f"Retry {retries}/{max_retries} for {func.__name__} "
                        f"after {actual_delay:.2f}s due to {type(e).__name__}: {e}"
                    )
                    time.sleep(actual_delay)
                    delay *= backoff_factor

        return cast(F, sync_wrapper)

    return decorator


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    service: str,
    operation: str
) -> T:
    """
    Await ``awaitable`` for at most ``timeout_seconds``.

    Raises:
        DependencyTimeoutError: if the budget is exceeded
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise DependencyTimeoutError(
            service=service,
            operation=operation,
            timeout_seconds=timeout_seconds,
            cause=e
        ) from e


async def retry_with_timeout(
    factory: Callable[[], Awaitable[T]],
    timeout_seconds: float,
    service: str,
    operation: str,
    max_retries: int = 1,
    retry_delay: float = 0.05
) -> T:
    """
    Run ``factory()`` under ``with_timeout``, retrying timeouts with backoff.

    ``factory`` is called once per attempt so every attempt awaits a fresh
    call. Errors other than DependencyTimeoutError are raised at once.
    """
    @retry(
        max_retries=max_retries,
        retry_delay=retry_delay,
        retry_exceptions=(DependencyTimeoutError,)
    )
    async def attempt():
        return await with_timeout(factory(), timeout_seconds, service=service, operation=operation)

    return await attempt()


class AsyncErrorTracer:
    """
    Async context manager that logs any exception raised inside it with the
    operation name and context, then re-raises it as an EngineError.
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        log_level: int = logging.ERROR,
        capture_as: Optional[Type[EngineError]] = None
    ):
        self.operation = operation
        self.context = dict(context or {})
        self.context["operation"] = operation
        self.log_level = log_level
        self.capture_as = capture_as

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_val is None:
            return False
        if not isinstance(exc_val, Exception):
            return False

        if isinstance(exc_val, EngineError):
            error = convert_exception(exc_val, context=self.context)
        elif self.capture_as is not None:
            error = self.capture_as(str(exc_val), cause=exc_val, context=self.context)
        else:
            error = convert_exception(exc_val, context=self.context)

        logger.log(self.log_level, f"Error in {self.operation}: {error}")

        if error is exc_val:
            return False
        raise error from exc_val


def error_response(
    error: Union[EngineError, Exception],
    include_details: bool = True,
    include_stack_trace: bool = False
) -> Dict[str, Any]:
    """
    Build the standard API error payload.

    Args:
        error: The error to describe
        include_details: Whether to include error details
        include_stack_trace: Whether to include the stack trace in details

    Returns:
        ``{"status": "error", "code": ..., "message": ..., "details": ...}``
    """
    if not isinstance(error, EngineError):
        error = convert_exception(error)

    error_info = error.to_error_info(include_stack_trace=include_stack_trace)

    response = {
        "status": "error",
        "code": error_info.code,
        "message": error_info.message
    }

    if include_details and error_info.details:
        response["details"] = error_info.details
    if include_stack_trace and error_info.stack_trace:
        response.setdefault("details", {})["stack_trace"] = error_info.stack_trace

    return response


def log_error(
    error: Union[EngineError, Exception],
    level: int = logging.ERROR,
    include_stack_trace: bool = False,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """Log an error in the standard ``ERROR [code]: message (context: ...)`` shape."""
    if not isinstance(error, EngineError):
        error = convert_exception(error, context=context)
    elif context:
        error.context.update(context)

    message = f"ERROR [{error.code.value}]: {error.message}"

    if error.context:
        context_str = ", ".join(f"{k}={v}" for k, v in error.context.items())
        message += f" (context: {context_str})"

    if error.cause:
        message += f" caused by {type(error.cause).__name__}: {error.cause}"

    if include_stack_trace:
        message += f"\n{traceback.format_exc()}"

    logger.log(level, message)
