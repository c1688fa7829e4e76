"""
Shared API utilities for the learning engine.

This module provides:
- The standard response envelope
- Exception handlers mapping engine errors to HTTP status codes
- The dependency that hands the service container to request handlers
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hybrid_srs.common.error_handling import EngineError, ErrorCode, error_response, log_error
from hybrid_srs.common.logger import app_logger

logger = app_logger.getChild("api")

ERROR_STATUS_CODES: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.NOT_FOUND_ERROR: status.HTTP_404_NOT_FOUND,
    ErrorCode.FEATURE_DISABLED: status.HTTP_403_FORBIDDEN,
    ErrorCode.DEPENDENCY_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorCode.DIMENSION_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ErrorCode.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.SEARCH_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.EXTERNAL_SERVICE_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.STORAGE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.UNKNOWN_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_code_for(error: EngineError) -> int:
    return ERROR_STATUS_CODES.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def get_container(request: Request):
    """Dependency returning the EngineContainer stored on the app."""
    return request.app.state.container


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle request validation errors and return a standardized response.

    Args:
        request: The incoming request
        exc: The validation exception

    Returns:
        A 422 JSON response listing every failing field
    """
    error_details = []
    for error in exc.errors():
        error_details.append({
            "location": list(error.get("loc", [])),
            "message": error.get("msg", "Unknown validation error"),
            "type": error.get("type", "")
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=APIResponse.error(
            "Validation error",
            details=error_details,
            code=ErrorCode.VALIDATION_ERROR.value
        )
    )


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Render an EngineError with the status code its error code maps to."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        log_error(exc, context={"path": request.url.path})
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.code.value}: {exc.message}")
    return JSONResponse(status_code=status_code, content=error_response(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(EngineError, engine_error_handler)


class APIResponse:
    """Standard API response structure"""

    @staticmethod
    def success(data: Any = None, message: str = "Success") -> Dict[str, Any]:
        """
        Create a success response.

        Args:
            data: Response data
            message: Success message

        Returns:
            Response dictionary
        """
        return {
            "status": "success",
            "message": message,
            "data": data
        }

    @staticmethod
    def error(message: str, details: Optional[Any] = None,
              code: Optional[str] = None) -> Dict[str, Any]:
        """
        Create an error response.

        Args:
            message: Error message
            details: Optional error details
            code: Optional error code

        Returns:
            Response dictionary
        """
        response = {
            "status": "error",
            "message": message
        }

        if details:
            response["details"] = details

        if code:
            response["code"] = code

        return response

