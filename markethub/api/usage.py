"""
Usage & entitlement API routes.

- GET  /api/usage/entitlement: resolve and return the caller's entitlement
- GET  /api/usage/quota/{category}: quota display for one category
- POST /api/usage/coupon: redeem a coupon code
"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from markethub.core.auth import AuthenticatedUser, get_current_user
from markethub.features.coupons.service import redeem_coupon
from markethub.features.entitlements.service import resolve_entitlement
from markethub.features.usage.service import can_use, coerce_category, remaining
from markethub.models.usage import CouponResult, EntitlementState


router = APIRouter(prefix="/api/usage", tags=["usage"])


class CouponRequest(BaseModel):
    coupon_code: Optional[str] = None


class QuotaResponse(BaseModel):
    category: str
    can_use: bool
    remaining: Optional[int]  # null = unlimited


@router.get("/entitlement", response_model=EntitlementState)
def get_entitlement(user: AuthenticatedUser = Depends(get_current_user)):
    """
    Resolve the caller's tier against billing and coupon state.

    Called on session start and by the client's scheduled poller.
    """
    return resolve_entitlement(user.user_id, user.email)


@router.get("/quota/{category}", response_model=QuotaResponse)
def get_quota(category: str, user: AuthenticatedUser = Depends(get_current_user)):
    cat = coerce_category(category)
    return {
        "category": cat.value,
        "can_use": can_use(user.user_id, cat),
        "remaining": remaining(user.user_id, cat),
    }


@router.post("/coupon", response_model=CouponResult)
def apply_coupon(request: CouponRequest, user: AuthenticatedUser = Depends(get_current_user)):
    """
    Redeem a coupon code.

    Invalid or empty codes return success=false with a message (HTTP 200).
    """
    return redeem_coupon(user.user_id, request.coupon_code)
