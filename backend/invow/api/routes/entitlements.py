"""
Entitlement API routes: quota slots, feature gates and subscription tier.

All routes require an authenticated user (request.state.user_id).
"""

from fastapi import APIRouter, Depends

from invow.api.dependencies.entitlements import (
    get_current_user_id,
    get_entitlement_service,
    raise_http_for,
)
from invow.api.schemas.entitlements import (
    CreationSlotResponse,
    EffectiveTierResponse,
    FeatureAccessResponse,
    UpgradeRequest,
    UsageSummaryResponse,
)
from invow.entitlements.catalog import parse_feature_key
from invow.entitlements.errors import EntitlementError
from invow.entitlements.service import EntitlementService, UsageSummary


router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


def _usage_response(summary: UsageSummary) -> UsageSummaryResponse:
    return UsageSummaryResponse(
        tier=summary.tier.value,
        effective_tier=summary.effective_tier.value,
        is_active=summary.is_active,
        limit=summary.limit,
        current_count=summary.current_count,
        remaining=summary.remaining,
        limit_exceeded=summary.limit_exceeded,
        cycle_start=summary.cycle_start,
        cycle_end=summary.cycle_end,
        subscription_end_date=summary.subscription_end_date,
    )


@router.get("/creation-slot", response_model=CreationSlotResponse)
def get_creation_slot(
    user_id: str = Depends(get_current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """
    Check whether the user may create another invoice.

    Never consumes the slot. allowed=false is a normal answer that the UI
    renders as an upgrade prompt.
    """
    try:
        slot = service.request_creation_slot(user_id)
    except EntitlementError as e:
        raise_http_for(e)
    return CreationSlotResponse(**slot.to_dict())


@router.get("/features/{feature_key}", response_model=FeatureAccessResponse)
def get_feature_access(
    feature_key: str,
    user_id: str = Depends(get_current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Check one feature gate. Unknown feature keys are rejected with 400."""
    try:
        allowed = service.has_feature(user_id, feature_key)
        tier = service.get_effective_tier(user_id)
    except EntitlementError as e:
        raise_http_for(e)
    return FeatureAccessResponse(
        feature_key=parse_feature_key(feature_key).value,
        allowed=allowed,
        effective_tier=tier.value,
    )


@router.get("/effective-tier", response_model=EffectiveTierResponse)
def get_effective_tier(
    user_id: str = Depends(get_current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Tier in force after expiry adjustment."""
    try:
        tier = service.get_effective_tier(user_id)
    except EntitlementError as e:
        raise_http_for(e)
    return EffectiveTierResponse(effective_tier=tier.value)


@router.get("/usage", response_model=UsageSummaryResponse)
def get_usage(
    user_id: str = Depends(get_current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Tier, quota usage and reset date."""
    try:
        summary = service.get_usage_summary(user_id)
    except EntitlementError as e:
        raise_http_for(e)
    return _usage_response(summary)


@router.post("/upgrade", response_model=UsageSummaryResponse)
def upgrade(
    request: UpgradeRequest,
    user_id: str = Depends(get_current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """
    Grant Premium for a number of days.

    Called after payment confirmation; extends an active grant.
    """
    try:
        summary = service.upgrade_to_premium(user_id, days=request.days)
    except EntitlementError as e:
        raise_http_for(e)
    return _usage_response(summary)


@router.post("/downgrade", response_model=UsageSummaryResponse)
def downgrade(
    user_id: str = Depends(get_current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Return the user to the Free tier."""
    try:
        summary = service.downgrade_to_free(user_id)
    except EntitlementError as e:
        raise_http_for(e)
    return _usage_response(summary)
