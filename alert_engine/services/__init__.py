"""
Business logic services for the alert engine.

Services encapsulate evaluation, delivery and preference logic, separating
it from the API layer.
"""

from alert_engine.services.exceptions import (
    ServiceError,
    NotFoundError,
    ConflictError,
    ValidationError,
    TransientInfraError,
    AuthError,
    InvalidStateTransition,
    DeliveryError,
    TransientDeliveryError,
    DeliveryPermanentError,
)

__all__ = [
    "ServiceError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "TransientInfraError",
    "AuthError",
    "InvalidStateTransition",
    "DeliveryError",
    "TransientDeliveryError",
    "DeliveryPermanentError",
]
