# backend/tipu/core/exceptions.py
"""
Domain-specific exceptions for the Tipu platform.

Services raise these; routes convert them with ``to_http_exception()`` so the
HTTP status reflects the error category (validation, authorization, conflict,
external dependency).
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def _detail(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self._detail())


class ValidationException(DomainException):
    """Raised when input has the wrong shape or violates a field rule."""

    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedException(DomainException):
    """Raised when the caller is not authenticated."""

    status_code = status.HTTP_401_UNAUTHORIZED

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail=self._detail(),
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenException(DomainException):
    """Raised when the caller's role or relationship does not permit the action."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when the request conflicts with the current stored state."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


class RetryableServiceException(ServiceException):
    """Raised when an external dependency failed and the caller may retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail=self._detail(),
            headers={"Retry-After": "30"},
        )


# Specific business exceptions


class InvalidTransitionException(ConflictException):
    """Raised when a booking is not in a state that allows the requested transition."""

    def __init__(self, booking_id: str, current_status: str, action: str):
        super().__init__(
            message=f"Cannot {action} a booking that is {current_status}",
            code="INVALID_BOOKING_TRANSITION",
            details={"booking_id": booking_id, "status": current_status, "action": action},
        )


class PaymentReferenceConflictException(ConflictException):
    """Raised when a booking already carries a different real payment reference."""

    def __init__(self, booking_id: str, existing_reference: str, new_reference: str):
        super().__init__(
            message="Booking is already linked to a different payment",
            code="PAYMENT_REFERENCE_CONFLICT",
            details={
                "booking_id": booking_id,
                "existing_reference": existing_reference,
                "new_reference": new_reference,
            },
        )


class DuplicateRequestException(ConflictException):
    """Raised when an equivalent request is already pending."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="DUPLICATE_REQUEST", details=details or {})


class RefundFailedException(RetryableServiceException):
    """Raised when a refund could not be issued; the cancellation is not applied."""

    def __init__(self, booking_id: str, reason: str):
        super().__init__(
            message="Refund could not be processed. The booking has not been cancelled; please retry.",
            code="REFUND_FAILED",
            details={"booking_id": booking_id, "reason": reason},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as connection issues,
    query failures, or constraint violations.
    """
