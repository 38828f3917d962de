from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ValidationError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class InvalidStateError(AppError):
    """Operation attempted on a record whose state does not permit it."""

    def __init__(self, message: str = "Invalid state", details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_STATE", status_code=status.HTTP_409_CONFLICT, details=details)


class InvalidTransitionError(AppError):
    """Requested status transition is not allowed from the current status."""

    def __init__(self, message: str = "Invalid transition", details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_TRANSITION", status_code=status.HTTP_409_CONFLICT, details=details)


class DuplicateCodeError(AppError):
    def __init__(self, message: str = "Transaction code already used"):
        super().__init__(message, code="DUPLICATE_CODE", status_code=status.HTTP_409_CONFLICT)


class InsufficientCreditsError(AppError):
    def __init__(self, message: str = "Insufficient credits"):
        super().__init__(message, code="INSUFFICIENT_CREDITS", status_code=status.HTTP_402_PAYMENT_REQUIRED)


class UpstreamError(AppError):
    """Payment gateway call failed. Message is generic; detail goes to the log."""

    def __init__(self, message: str = "Payment initiation failed"):
        super().__init__(message, code="UPSTREAM_ERROR", status_code=status.HTTP_502_BAD_GATEWAY)


class SyncError(AppError):
    """Remote store push failed. Raised by remote stores, handled by the sync engine."""

    def __init__(self, message: str = "Remote sync failed"):
        super().__init__(message, code="SYNC_ERROR", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from fulfillment.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
