"""
Shared FastAPI dependencies.

Provides:
- require_user: Bearer JWT authentication, returns the user id (``sub``)
- require_operator: Bearer JWT carrying ``role: operator``
- get_gateway / get_consumer / get_ledger: Application singletons from app.state
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError

from alert_engine.config.settings import get_settings
from alert_engine.services.condition_consumer import ConditionConsumer
from alert_engine.services.suppression_ledger import SuppressionLedger
from alert_engine.utils.connection_gateway import ConnectionGateway


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    """Authenticated caller."""
    user_id: int
    claims: Dict[str, Any]

    @property
    def is_operator(self) -> bool:
        return self.claims.get("role") == "operator"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    """
    FastAPI dependency that requires a valid bearer token.

    Raises:
        HTTPException 401: Missing, invalid or expired token
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    settings = get_settings()
    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        user_id = int(claims.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise _unauthorized("Invalid authentication token")
    return AuthContext(user_id=user_id, claims=claims)


async def require_operator(ctx: AuthContext = Depends(require_user)) -> AuthContext:
    """
    FastAPI dependency for operator-only endpoints.

    Raises:
        HTTPException 403: Token lacks the operator role
    """
    if not ctx.is_operator:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator role required",
        )
    return ctx


def get_gateway(request: Request) -> ConnectionGateway:
    return request.app.state.gateway


def get_consumer(request: Request) -> ConditionConsumer:
    return request.app.state.consumer


def get_ledger(request: Request) -> SuppressionLedger:
    return request.app.state.ledger
