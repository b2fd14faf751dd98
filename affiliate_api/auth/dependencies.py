"""
FastAPI dependencies for authentication and authorization.
"""

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from affiliate_api.auth.jwt import TokenClaims, decode_access_token
from affiliate_api.utils.logging import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


async def get_current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenClaims:
    """
    Validate the bearer token and return its claims.

    Raises:
        HTTPException: 401 if token is missing, invalid or has no subject
    """
    if not credentials:
        logger.warning("auth_failed", reason="missing_token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_access_token(credentials.credentials)
    except JWTError as e:
        logger.warning("auth_failed", reason="invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_current_user_id(claims: TokenClaims = Depends(get_current_claims)) -> str:
    """User id the caller's report documents are keyed by."""
    logger.debug("auth_success", user_id=claims.user_id)
    return claims.user_id


async def require_admin(claims: TokenClaims = Depends(get_current_claims)) -> str:
    """
    Allow only callers whose token carries the admin role.

    Raises:
        HTTPException: 403 for non-admin callers
    """
    if not claims.is_admin:
        logger.warning("auth_forbidden", user_id=claims.user_id, role=claims.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return claims.user_id
