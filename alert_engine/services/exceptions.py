"""
Custom exceptions for service layer.

Provides specific exception types for business logic errors that can be
translated to appropriate HTTP responses, connection close codes, or delivery
job state changes.
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ConflictError(ServiceError):
    """Raised when an operation conflicts with existing state."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.message = message
        self.current_status = current_status
        super().__init__(message)


class ValidationError(ServiceError):
    """
    Raised when input validation fails.

    Malformed conditions and preference updates are rejected synchronously
    and never retried.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class TransientInfraError(ServiceError):
    """
    Raised when shared infrastructure (ledger or store) stays unreachable
    after bounded retries.
    """

    def __init__(self, operation: str, attempts: int, cause: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        self.message = f"{operation} failed after {attempts} attempts: {cause}"
        super().__init__(self.message)


class AuthError(ServiceError):
    """Raised when connection credentials are missing, invalid or expired."""

    code = "AUTH_FAILED"

    def __init__(self, message: str = "Authentication failed"):
        self.message = message
        super().__init__(message)


class InvalidStateTransition(ServiceError):
    """Raised when a connection is asked to move to a state it cannot reach."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition connection from {current} to {target}")


class DeliveryError(ServiceError):
    """Base exception for channel delivery failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Retryable delivery failure (network error, 5xx from the mail service)."""
    pass


class DeliveryPermanentError(DeliveryError):
    """Non-retryable delivery failure (e.g. invalid or bounced address)."""
    pass
