"""
Account router - referral code and portal approval for the calling user.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from affiliate_api.auth.dependencies import get_current_user_id
from affiliate_api.dependencies import get_referral_service
from affiliate_api.services.referrals import ReferralService

router = APIRouter()


class ReferralTokenRequest(BaseModel):
    """Desired custom code; normalized to ``a-z0-9_-`` before it is stored."""

    token: str = ""


@router.get("/referrer-code")
async def get_referrer_code(
    user_id: str = Depends(get_current_user_id),
    referrals: ReferralService = Depends(get_referral_service),
    create: bool = False,
):
    """The caller's referral code; ``create=true`` assigns one when missing."""
    if create:
        code = await referrals.get_or_create_referral_code(user_id)
    else:
        code = await referrals.get_referral_code(user_id)
    return {"success": True, "data": {"code": code}}


@router.put("/referrer-token")
async def set_referrer_token(
    payload: ReferralTokenRequest,
    user_id: str = Depends(get_current_user_id),
    referrals: ReferralService = Depends(get_referral_service),
):
    """Claim a custom referral code (400 when malformed, 409 when taken)."""
    code = await referrals.set_referral_code(user_id, payload.token)
    return {"success": True, "data": {"code": code}}


@router.get("/approval")
async def get_approval(
    user_id: str = Depends(get_current_user_id),
    referrals: ReferralService = Depends(get_referral_service),
):
    approved = await referrals.is_user_approved(user_id)
    return {"success": True, "data": {"approved": approved}}
