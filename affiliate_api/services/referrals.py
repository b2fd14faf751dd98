"""
Referral codes and portal approval.

Each affiliate owns one short referral code (``affiliate_referrers``) and
may be granted portal access through ``approved_users``.
"""

import re
import secrets
import string
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

import structlog

from affiliate_api.core.executor import ResilientQueryExecutor
from affiliate_api.models.enums import ApprovalStatus
from affiliate_api.storage.base import RemoteStore, StoreConflictError, eq

logger = structlog.get_logger(__name__)

REFERRERS_TABLE = "affiliate_referrers"
APPROVED_USERS_TABLE = "approved_users"

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8

CUSTOM_CODE_MIN_LENGTH = 3
CUSTOM_CODE_MAX_LENGTH = 32
_CUSTOM_CODE_DISALLOWED = re.compile(r"[^a-z0-9_-]")


class InvalidReferralCodeError(ValueError):
    """Raised when a requested custom code is empty or out of bounds after normalizing."""

    retryable = False


class ReferralCodeTakenError(Exception):
    """Raised when another affiliate already owns the requested code."""

    retryable = False

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Referral code {code!r} is already taken")


def generate_referral_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_custom_code(value: Any) -> str:
    """
    Lower-case ``value`` and drop every character outside ``a-z0-9_-``.

    Raises:
        InvalidReferralCodeError: If the result is not 3-32 characters long
    """
    if not isinstance(value, str):
        raise InvalidReferralCodeError("Referral code must be a string")
    normalized = _CUSTOM_CODE_DISALLOWED.sub("", value.strip().lower())
    if not CUSTOM_CODE_MIN_LENGTH <= len(normalized) <= CUSTOM_CODE_MAX_LENGTH:
        raise InvalidReferralCodeError(
            f"Referral code must be {CUSTOM_CODE_MIN_LENGTH}-{CUSTOM_CODE_MAX_LENGTH} chars (a-z, 0-9, _ or -)"
        )
    return normalized


class ReferralService:
    """Referral code and approval lookups for one remote store."""

    def __init__(
        self,
        store: RemoteStore,
        executor: ResilientQueryExecutor,
        timeout_ms: Optional[int] = None,
        max_code_attempts: int = 5,
    ):
        self.store = store
        self.executor = executor
        self.timeout_ms = timeout_ms
        self.max_code_attempts = max_code_attempts

    async def get_referral_code(self, user_id: str) -> Optional[str]:
        row = await self.executor.execute(
            partial(self.store.fetch_one, REFERRERS_TABLE, "code", [eq("user_id", user_id)]),
            self.timeout_ms,
            operation="fetch_referral_code",
        )
        return row["code"] if row else None

    async def create_referral_code(self, user_id: str) -> str:
        """
        Assign a fresh random code to ``user_id``.

        A collision on the unique code draws a new one. If the user already
        has a code (a concurrent create won), that code is returned.

        Raises:
            StoreConflictError: Every drawn code collided
        """
        last_error: Optional[StoreConflictError] = None
        for attempt in range(self.max_code_attempts):
            code = generate_referral_code()
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            try:
                await self.executor.execute(
                    partial(
                        self.store.insert,
                        REFERRERS_TABLE,
                        [{"user_id": user_id, "code": code, "created_at": now, "updated_at": now}],
                    ),
                    self.timeout_ms,
                    operation="create_referral_code",
                )
            except StoreConflictError as e:
                existing = await self.get_referral_code(user_id)
                if existing:
                    return existing
                logger.warning("referral_code_collision", user_id=user_id, attempt=attempt + 1)
                last_error = e
                continue

            logger.info("referral_code_created", user_id=user_id)
            return code

        raise last_error

    async def get_or_create_referral_code(self, user_id: str) -> str:
        code = await self.get_referral_code(user_id)
        if code:
            return code
        return await self.create_referral_code(user_id)

    async def set_referral_code(self, user_id: str, desired: Any) -> str:
        """
        Replace the caller's code with a custom one.

        Setting the code the user already owns is a no-op write.

        Raises:
            InvalidReferralCodeError: ``desired`` does not normalize to 3-32 chars
            ReferralCodeTakenError: Another user owns the normalized code
        """
        code = normalize_custom_code(desired)
        holder = await self.executor.execute(
            partial(self.store.fetch_one, REFERRERS_TABLE, "user_id", [eq("code", code)]),
            self.timeout_ms,
            operation="fetch_referral_code_holder",
        )
        if holder is not None and holder["user_id"] != user_id:
            logger.info("referral_code_taken", user_id=user_id, code=code)
            raise ReferralCodeTakenError(code)

        now = datetime.now(timezone.utc).replace(tzinfo=None)
        try:
            rows = await self.executor.execute(
                partial(
                    self.store.upsert,
                    REFERRERS_TABLE,
                    [{"user_id": user_id, "code": code, "updated_at": now}],
                    on_conflict="user_id",
                ),
                self.timeout_ms,
                operation="set_referral_code",
            )
        except StoreConflictError as e:
            # Claimed by someone else between the check and the write
            raise ReferralCodeTakenError(code) from e

        logger.info("referral_code_set", user_id=user_id, code=code)
        return rows[0]["code"] if rows else code

    async def is_user_approved(self, user_id: str) -> bool:
        """True when ``user_id`` has an active row in ``approved_users``."""
        row = await self.executor.execute(
            partial(
                self.store.fetch_one,
                APPROVED_USERS_TABLE,
                "user_id, status",
                [eq("user_id", user_id), eq("status", ApprovalStatus.ACTIVE.value)],
            ),
            self.timeout_ms,
            operation="fetch_approval",
        )
        return row is not None
