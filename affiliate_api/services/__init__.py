"""
Business logic layer.
Services orchestrate data access, validation, and domain logic.
"""

from affiliate_api.services.daily_reports import SeedSummary, seed_daily_buckets
from affiliate_api.services.metrics_store import MetricsStore
from affiliate_api.services.referrals import ReferralService

__all__ = ["MetricsStore", "ReferralService", "SeedSummary", "seed_daily_buckets"]
