"""JWT authentication and authorization module."""

from affiliate_api.auth.dependencies import get_current_claims, get_current_user_id, require_admin
from affiliate_api.auth.jwt import ADMIN_ROLE, TokenClaims, create_access_token, decode_access_token

__all__ = [
    "ADMIN_ROLE",
    "TokenClaims",
    "create_access_token",
    "decode_access_token",
    "get_current_claims",
    "get_current_user_id",
    "require_admin",
]
