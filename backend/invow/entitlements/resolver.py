"""
Entitlement resolver: effective tier and feature access.

effective_tier() is the only place where an expired Premium grant is
downgraded to Free. Nothing else may special-case expiry.
"""

from datetime import datetime
from typing import Optional

from invow.entitlements.catalog import (
    UNLIMITED,
    FeatureKind,
    FeatureValue,
    Tier,
    features_of,
    parse_feature_key,
)


def is_active(subscription, now: datetime) -> bool:
    """
    Whether the subscription's tier grant is currently in force.

    Free never expires. Premium is active only with an end date in the future.
    A missing subscription is an implicit Free subscription.
    """
    if subscription is None:
        return True
    if Tier(subscription.tier) is Tier.FREE:
        return True
    end_date: Optional[datetime] = subscription.subscription_end_date
    return end_date is not None and end_date > now


def effective_tier(subscription, now: datetime) -> Tier:
    """Tier actually granted right now, after accounting for expiry."""
    if subscription is None:
        return Tier.FREE
    tier = Tier(subscription.tier)
    if tier is Tier.PREMIUM and not is_active(subscription, now):
        return Tier.FREE
    return tier


def is_truthy(value: FeatureValue) -> bool:
    """
    Interpret a feature value as an access decision.

    Count values grant access when positive, and UNLIMITED always grants
    access even though it is negative.
    """
    if value.kind is FeatureKind.BOOL:
        return value.value
    if value.kind is FeatureKind.COUNT:
        return value.value == UNLIMITED or value.value > 0
    if value.kind is FeatureKind.QUALITIES:
        return len(value.value) > 0
    if value.kind is FeatureKind.LABEL:
        return True
    raise ValueError(f"Unhandled feature kind: {value.kind}")


def can_access_feature(tier: Tier, feature_key) -> bool:
    """
    Check a feature against a tier's catalog record.

    Raises:
        InvalidFeatureKeyError: If feature_key names no catalog feature
    """
    key = parse_feature_key(feature_key)
    return is_truthy(features_of(tier).feature_value(key))
