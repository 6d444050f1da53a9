"""
Custom exceptions and error handlers for consistent error responses.

Every domain failure raised by the settlement core is an ``AppException``.
Only ``PersistenceError`` and ``ExternalServiceError`` are safe for an outer
layer to retry automatically; everything else is terminal for the call.
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    retryable = False

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(AppException):
    """Bad input. Never retried automatically."""

    def __init__(self, message: str, details: Dict[str, Any] = None, error_code: str = "ERR_VALIDATION_001"):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class MissingWalletError(ValidationError):
    """Raised when a user has no registered wallet address."""

    def __init__(self, user_id: str):
        super().__init__(
            message=f"User {user_id} has no wallet address",
            details={"user_id": user_id},
            error_code="ERR_WALLET_001"
        )


class WebhookSignatureError(ValidationError):
    """Raised when a payment webhook fails signature verification."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message=message, error_code="ERR_WEBHOOK_001")
        self.status_code = status.HTTP_400_BAD_REQUEST


class InvalidStateError(AppException):
    """Operation not applicable to the entity's current state."""

    def __init__(self, message: str, details: Dict[str, Any] = None, error_code: str = "ERR_STATE_001"):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class AlreadyRedeemedError(InvalidStateError):
    """Raised when a perk claim has already been redeemed."""

    def __init__(self, claim_id: str):
        super().__init__(
            message=f"Perk claim {claim_id} has already been redeemed",
            details={"claim_id": claim_id},
            error_code="ERR_PERK_REDEEMED"
        )


class AlreadyVotedError(InvalidStateError):
    """Raised when a voter already has a ballot for a vote."""

    def __init__(self, vote_id: str, user_id: str):
        super().__init__(
            message=f"User {user_id} has already voted in vote {vote_id}",
            details={"vote_id": vote_id, "user_id": user_id},
            error_code="ERR_VOTE_DUPLICATE"
        )


class InsufficientBalanceError(InvalidStateError):
    """Raised when a token balance does not cover a cost."""

    def __init__(self, required, available):
        super().__init__(
            message="Insufficient token balance",
            details={"required": str(required), "available": str(available)},
            error_code="ERR_BALANCE_001"
        )


class MintRejectedError(InvalidStateError):
    """Raised when the blockchain rejected a mint. Terminal for the order."""

    def __init__(self, order_id: str, reason: str):
        super().__init__(
            message=f"Mint for order {order_id} was rejected",
            details={"order_id": order_id, "reason": reason},
            error_code="ERR_MINT_REJECTED"
        )


class AmbiguousMintError(AppException):
    """
    The outcome of a mint broadcast is unknown.

    Requires manual reconciliation; must never be retried automatically.
    """

    def __init__(self, order_id: str, reason: str = "Mint outcome unknown"):
        super().__init__(
            message=f"Mint for order {order_id} needs manual reconciliation",
            error_code="ERR_MINT_AMBIGUOUS",
            status_code=status.HTTP_409_CONFLICT,
            details={"order_id": order_id, "reason": reason}
        )


class TransferRejectedError(InvalidStateError):
    """Raised when the blockchain refused a token transfer."""

    def __init__(self, reason: str):
        super().__init__(
            message="Token transfer was rejected",
            details={"reason": reason},
            error_code="ERR_TRANSFER_REJECTED"
        )


class AmbiguousTransferError(AppException):
    """The outcome of a transfer broadcast is unknown; do not resubmit blindly."""

    def __init__(self, reason: str = "Transfer outcome unknown"):
        super().__init__(
            message="Token transfer outcome is unknown",
            error_code="ERR_TRANSFER_AMBIGUOUS",
            status_code=status.HTTP_409_CONFLICT,
            details={"reason": reason}
        )


class PersistenceError(AppException):
    """Transient store failure. Safe to retry the whole operation."""

    retryable = True

    def __init__(self, message: str = "Persistence failure"):
        super().__init__(
            message=message,
            error_code="ERR_PERSISTENCE_001",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        )


class ExternalServiceError(AppException):
    """Payment gateway or blockchain unreachable. Retried by the caller."""

    retryable = True

    def __init__(self, service: str, message: str = "External service unavailable"):
        super().__init__(
            message=message,
            error_code="ERR_EXTERNAL_001",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"service": service}
        )


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.error_code, exc.message, extra={"details": exc.details})
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        },
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": exc.errors()
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
