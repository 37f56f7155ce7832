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

    def body(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "details": self.details,
            }
        }


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
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class UpstreamProviderError(AppError):
    """A third-party API (CRM, payment provider) failed or was unreachable."""

    def __init__(self, message: str = "Upstream provider error", details: dict[str, Any] | None = None):
        super().__init__(message, code="UPSTREAM_ERROR", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class BalanceConflictError(ConflictError):
    """The balance row changed between read and compare-and-swap write."""

    def __init__(self, user_id: str):
        super().__init__("Balance was modified concurrently", details={"user_id": user_id})


# Credit errors use the flat 402 body clients already understand:
# {"error": "insufficient_credits", "message": ..., "balance": ..., "required": ...}


class CreditError(AppError):
    error_key = "credit_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code=self.error_key.upper(),
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details=details,
        )

    def body(self) -> dict[str, Any]:
        return {"error": self.error_key, "message": self.message, **self.details}


class NoCreditsConfiguredError(CreditError):
    error_key = "no_credits"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Você não tem créditos configurados. Entre em contato com o suporte.")


class InsufficientCreditsError(CreditError):
    error_key = "insufficient_credits"

    def __init__(self, balance: dict[str, int], required: int):
        self.balance = balance
        self.required = required
        super().__init__(
            "Seus créditos acabaram!",
            details={"balance": balance, "required": required},
        )


# Webhook errors never leave the webhook handler; they decide the logged status.


class WebhookError(Exception):
    status = "error"


class InvalidWebhookSignatureError(WebhookError):
    status = "rejected"


class WebhookPayloadError(WebhookError):
    status = "error"


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = exc.body()
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
    from magnetic.core.logging import get_logger
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
