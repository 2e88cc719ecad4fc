"""
Subscription entitlement and usage-quota engine.

This package provides:
- catalog: Tier, TierFeatures, FeatureKey and the TIER_CATALOG table
- billing_cycle: lazy billing-cycle rollover arithmetic
- usage_counter: admission control and bounded counter adjustment
- resolver: effective tier (expiry-adjusted) and feature access
- cache: caller-owned effective-tier cache with TTL and invalidation
- service: EntitlementService, the only component callers should use

Import EntitlementService from invow.entitlements.service. It depends on
the models, which in turn depend on this package's catalog, so it is not
re-exported here.
"""

from invow.entitlements.catalog import (
    TIER_CATALOG,
    UNLIMITED,
    ExportQuality,
    FeatureKey,
    FeatureKind,
    FeatureValue,
    HistoryKind,
    Tier,
    TierFeatures,
    features_of,
    parse_feature_key,
)
from invow.entitlements.errors import (
    EntitlementError,
    InvalidFeatureKeyError,
    ConcurrentUpdateConflictError,
    EntitlementPersistenceError,
    QuotaExceededError,
)
from invow.entitlements.cache import EffectiveTierCache

__all__ = [
    "TIER_CATALOG",
    "UNLIMITED",
    "ExportQuality",
    "FeatureKey",
    "FeatureKind",
    "FeatureValue",
    "HistoryKind",
    "Tier",
    "TierFeatures",
    "features_of",
    "parse_feature_key",
    "EntitlementError",
    "InvalidFeatureKeyError",
    "ConcurrentUpdateConflictError",
    "EntitlementPersistenceError",
    "QuotaExceededError",
    "EffectiveTierCache",
]
