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


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", code: str = "CONFLICT", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Ledger taxonomy


class LedgerValidationError(AppError):
    """Caller supplied something the ledger cannot act on."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, details=details)


class InvalidAmountError(LedgerValidationError):
    def __init__(self, amount: Any):
        super().__init__(
            f"Credit amount must be a positive integer, got {amount!r}",
            code="INVALID_AMOUNT",
            details={"amount": amount},
        )


class InsufficientCreditsError(AppError):
    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}.",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": required, "available": available},
        )


class DuplicateExternalRefError(ConflictError):
    """A bucket already exists for (user, external_ref). Engines treat this as a no-op."""

    def __init__(self, user_id: str, external_ref: str, existing: Any = None):
        self.existing = existing
        super().__init__(
            f"External reference {external_ref!r} already granted",
            code="DUPLICATE_EXTERNAL_REF",
            details={"user_id": user_id, "external_ref": external_ref},
        )


class InsufficientBucketBalanceError(ConflictError):
    def __init__(self, bucket_id: str, requested: int, remaining: int):
        super().__init__(
            "Bucket does not hold enough credits",
            code="INSUFFICIENT_BUCKET_BALANCE",
            details={"bucket_id": bucket_id, "requested": requested, "remaining": remaining},
        )


class BucketExpiredError(ConflictError):
    def __init__(self, bucket_id: str):
        super().__init__("Bucket has expired", code="BUCKET_EXPIRED", details={"bucket_id": bucket_id})


class LedgerBusyError(ConflictError):
    def __init__(self, user_id: str):
        super().__init__(
            "Another ledger operation is in progress for this user, retry shortly",
            code="LEDGER_BUSY",
            details={"user_id": user_id},
        )


class StorageUnavailableError(AppError):
    def __init__(self, message: str = "Credit storage unavailable"):
        super().__init__(message, code="STORAGE_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


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
    if isinstance(exc, StorageUnavailableError):
        from creditledger.core.logging import get_logger
        get_logger(__name__).error("storage_unavailable", path=request.url.path, reason=exc.message)
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
    from creditledger.core.logging import get_logger
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
