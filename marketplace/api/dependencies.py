"""
API dependencies for the Marketplace Bookings Service.
Handles JWT authentication and role checks.
"""

from typing import Dict, Any
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging

from marketplace.core.config import config
from marketplace.db.database import db_manager
from marketplace.db.redis_client import redis_manager

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def decode_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """
    Decode and validate the bearer JWT issued by the auth service.

    Args:
        credentials: HTTP Bearer token credentials

    Returns:
        The token payload

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        jwt_secret = await config.get_jwt_secret()
        jwt_algorithm = await config.get_jwt_algorithm()

        return jwt.decode(
            credentials.credentials,
            jwt_secret,
            algorithms=[jwt_algorithm]
        )

    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")


async def get_current_user_id(payload: Dict[str, Any] = Depends(decode_token)) -> int:
    """Extract the user ID from the token payload."""
    user_id = payload.get("user_id")
    if not user_id:
        raise _unauthorized("Invalid token: missing user_id")
    try:
        return int(user_id)
    except (TypeError, ValueError):
        raise _unauthorized("Invalid token: malformed user_id")


async def get_current_user_role(payload: Dict[str, Any] = Depends(decode_token)) -> str:
    """Extract the user role from the token payload."""
    role = payload.get("role")
    if not role:
        raise _unauthorized("Invalid token: missing role")
    return role


async def get_authenticated_user(
    user_id: int = Depends(get_current_user_id),
    role: str = Depends(get_current_user_role)
) -> Dict[str, Any]:
    """
    Get authenticated user information.

    Returns:
        Dict with ``user_id``, ``role`` and ``is_admin``
    """
    return {"user_id": user_id, "role": role, "is_admin": role == "admin"}


async def get_admin_user(user_info: Dict[str, Any] = Depends(get_authenticated_user)) -> Dict[str, Any]:
    """
    Require admin role.

    Raises:
        HTTPException: If user is not an admin
    """
    if not user_info["is_admin"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return user_info


async def check_service_health() -> Dict[str, str]:
    """Check database and Redis connectivity."""
    database = "healthy" if db_manager.health_check() else "unhealthy"
    redis = "healthy" if await redis_manager.health_check() else "unavailable"

    # Redis only backs the optional cache and realtime push
    overall = "healthy" if database == "healthy" else "unhealthy"
    return {"database": database, "redis": redis, "overall": overall}
