"""
Bearer tokens for affiliate users.

A token names the affiliate (``sub`` = the user id every report document is
keyed by) and optionally a ``role``; ``admin`` unlocks maintenance routes.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from affiliate_api.config import Settings, get_settings

ADMIN_ROLE = "admin"
TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenClaims:
    """Validated claims of an access token."""

    user_id: str
    role: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def create_access_token(
    user_id: str,
    role: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[Settings] = None,
) -> str:
    """
    Issue an access token for ``user_id``.

    Args:
        user_id: Affiliate user id, stored as ``sub``
        role: Optional role claim (``"admin"`` for maintenance access)
        expires_delta: Lifetime (default: ``jwt_expiration_minutes``)
        settings: Signing settings (default: environment)
    """
    if not user_id:
        raise ValueError("user_id is required")
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.jwt_expiration_minutes)

    claims = {"sub": user_id, "type": TOKEN_TYPE, "iat": now, "exp": now + lifetime}
    if role:
        claims["role"] = role
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> TokenClaims:
    """
    Verify ``token`` and return its claims.

    Raises:
        JWTError: Bad signature, expired, not an access token, no subject,
            or a non-string role
    """
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise JWTError(f"Token validation failed: {e}") from e

    if payload.get("type") != TOKEN_TYPE:
        raise JWTError("Token validation failed: invalid token type")
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise JWTError("Token validation failed: missing subject")
    role = payload.get("role")
    if role is not None and not isinstance(role, str):
        raise JWTError("Token validation failed: role must be a string")

    exp = payload.get("exp")
    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc) if isinstance(exp, (int, float)) else None
    return TokenClaims(user_id=user_id, role=role, expires_at=expires_at)
