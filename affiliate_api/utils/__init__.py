"""Utility modules for logging, request tracing, and common helpers."""

from affiliate_api.utils.logging import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
