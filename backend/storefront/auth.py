from __future__ import annotations

from typing import Annotated, Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import ExpiredSignatureError, InvalidTokenError

from .logging_config import get_logger
from .settings import settings

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)
AuthCredentials = Annotated[HTTPAuthorizationCredentials | None, Depends(security)]

OPERATOR_ROLES = frozenset({"ADMIN", "SUPER_ADMIN"})


def verify_operator_token(token: str, secret: str) -> dict[str, Any]:
    """
    Decode an admin session token issued by the storefront back office.

    Tokens are HS256 with ``{id, email, role, isActive}`` claims. Only active
    ADMIN or SUPER_ADMIN identities may act on the payment ledger.

    Raises:
        HTTPException: 401 for a bad or expired token, 403 for a valid token
            without operator rights.
    """
    # Pin the algorithm; never trust the header's alg
    try:
        payload = jwt.decode(token, key=secret, algorithms=["HS256"], options={"require": ["exp"]})
    except ExpiredSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        ) from exc
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc

    if not payload.get("id") or not payload.get("email"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing identity claims",
        )
    if payload.get("role") not in OPERATOR_ROLES or payload.get("isActive") is not True:
        logger.warning(
            "operator_access_denied",
            security_event=True,
            admin_id=payload.get("id"),
            role=payload.get("role"),
            active=payload.get("isActive"),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator role required",
        )
    return payload


async def require_operator(credentials: AuthCredentials) -> dict[str, Any]:
    """FastAPI dependency guarding the operator endpoints."""

    if settings.ADMIN_AUTH_BYPASS:
        # Use deterministic local claims for development/tests
        return {
            "id": "local-dev-admin",
            "email": "dev@storefront.local",
            "role": "SUPER_ADMIN",
            "isActive": True,
        }

    if not settings.ADMIN_JWT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_JWT_SECRET is not configured",
        )
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )
    return verify_operator_token(credentials.credentials, settings.ADMIN_JWT_SECRET)


OperatorClaims = Annotated[dict[str, Any], Depends(require_operator)]
