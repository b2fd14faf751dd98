"""API routers for all endpoints."""

from affiliate_api.routers import admin, me, reports, system

__all__ = [
    "admin",
    "me",
    "reports",
    "system",
]
