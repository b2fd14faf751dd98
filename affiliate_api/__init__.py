"""Affiliate dashboard API: resilient data access and report aggregation."""

__version__ = "0.1.0"
