"""
Tier catalog: canonical feature/limit table for every subscription tier.

Provides:
- Tier: closed enumeration of subscription tiers
- TierFeatures: immutable feature/limit record for one tier
- FeatureKey: every named feature in a TierFeatures record
- FeatureValue: tagged union (Bool | Count | Qualities | Label) for a feature
- TIER_CATALOG / features_of(): total lookup from Tier to TierFeatures
- cycle_length_days(): billing cycle length policy per tier

CRITICAL: The catalog is code, not configuration. Adding a tier or feature
is a deployment event. The module refuses to import if any tier is missing
or if Premium is less generous than Free for any feature.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet

from invow.entitlements.errors import InvalidFeatureKeyError

# Sentinel for "no limit" on any numeric feature
UNLIMITED = -1

# Quota reset cadence for tiers whose access never expires (Free)
DEFAULT_BILLING_CYCLE_DAYS = 30


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Tier(str, Enum):
    """Subscription tiers."""
    FREE = "free"
    PREMIUM = "premium"


class HistoryKind(str, Enum):
    """Unit in which history_limit is expressed."""
    DAYS = "days"
    ITEMS = "items"


class ExportQuality(str, Enum):
    """Export rendering qualities."""
    STANDARD = "standard"
    HIGH = "high"
    PRINT_READY = "print_ready"


class FeatureKey(str, Enum):
    """Every feature in a TierFeatures record. Values match field names."""
    INVOICE_LIMIT = "invoice_limit"
    PERIOD_LENGTH_DAYS = "period_length_days"
    TEMPLATE_COUNT = "template_count"
    HISTORY_LIMIT = "history_limit"
    HISTORY_KIND = "history_kind"
    HAS_LOGO = "has_logo"
    HAS_SIGNATURE = "has_signature"
    HAS_CUSTOM_COLORS = "has_custom_colors"
    HAS_DASHBOARD_TOTALS = "has_dashboard_totals"
    HAS_MONTHLY_REPORT = "has_monthly_report"
    HAS_CUSTOMER_MANAGEMENT = "has_customer_management"
    EXPORT_QUALITIES = "export_qualities"


class FeatureKind(str, Enum):
    """Tag of a FeatureValue."""
    BOOL = "bool"
    COUNT = "count"
    QUALITIES = "qualities"
    LABEL = "label"


# Shape of every feature. Checked exhaustive at import.
FEATURE_KINDS: Dict[FeatureKey, FeatureKind] = {
    FeatureKey.INVOICE_LIMIT: FeatureKind.COUNT,
    FeatureKey.PERIOD_LENGTH_DAYS: FeatureKind.COUNT,
    FeatureKey.TEMPLATE_COUNT: FeatureKind.COUNT,
    FeatureKey.HISTORY_LIMIT: FeatureKind.COUNT,
    FeatureKey.HISTORY_KIND: FeatureKind.LABEL,
    FeatureKey.HAS_LOGO: FeatureKind.BOOL,
    FeatureKey.HAS_SIGNATURE: FeatureKind.BOOL,
    FeatureKey.HAS_CUSTOM_COLORS: FeatureKind.BOOL,
    FeatureKey.HAS_DASHBOARD_TOTALS: FeatureKind.BOOL,
    FeatureKey.HAS_MONTHLY_REPORT: FeatureKind.BOOL,
    FeatureKey.HAS_CUSTOMER_MANAGEMENT: FeatureKind.BOOL,
    FeatureKey.EXPORT_QUALITIES: FeatureKind.QUALITIES,
}


# ---------------------------------------------------------------------------
# Feature values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureValue:
    """
    A single feature value tagged with its kind.

    Use the constructors rather than building instances directly so that
    the payload type always matches the tag.
    """

    kind: FeatureKind
    value: Any

    @classmethod
    def boolean(cls, value: bool) -> "FeatureValue":
        return cls(FeatureKind.BOOL, bool(value))

    @classmethod
    def count(cls, value: int) -> "FeatureValue":
        return cls(FeatureKind.COUNT, int(value))

    @classmethod
    def qualities(cls, value) -> "FeatureValue":
        return cls(FeatureKind.QUALITIES, frozenset(value))

    @classmethod
    def label(cls, value: str) -> "FeatureValue":
        return cls(FeatureKind.LABEL, str(value))


_CONSTRUCTORS = {
    FeatureKind.BOOL: FeatureValue.boolean,
    FeatureKind.COUNT: FeatureValue.count,
    FeatureKind.QUALITIES: FeatureValue.qualities,
    FeatureKind.LABEL: FeatureValue.label,
}


@dataclass(frozen=True)
class TierFeatures:
    """Immutable feature/limit record for one tier."""

    invoice_limit: int
    period_length_days: int
    template_count: int
    history_limit: int
    history_kind: HistoryKind
    has_logo: bool
    has_signature: bool
    has_custom_colors: bool
    has_dashboard_totals: bool
    has_monthly_report: bool
    has_customer_management: bool
    export_qualities: FrozenSet[ExportQuality]

    def feature_value(self, key: FeatureKey) -> FeatureValue:
        """Return the tagged value of a feature."""
        raw = getattr(self, key.value)
        if isinstance(raw, Enum):
            raw = raw.value
        return _CONSTRUCTORS[FEATURE_KINDS[key]](raw)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-JSON representation for API responses."""
        result: Dict[str, Any] = {}
        for key in FeatureKey:
            value = self.feature_value(key).value
            if isinstance(value, frozenset):
                value = sorted(member.value for member in value)
            result[key.value] = value
        return result


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

TIER_CATALOG: Dict[Tier, TierFeatures] = {
    Tier.FREE: TierFeatures(
        invoice_limit=30,
        period_length_days=0,
        template_count=1,
        history_limit=10,
        history_kind=HistoryKind.ITEMS,
        has_logo=False,
        has_signature=False,
        has_custom_colors=False,
        has_dashboard_totals=False,
        has_monthly_report=False,
        has_customer_management=False,
        export_qualities=frozenset({ExportQuality.STANDARD}),
    ),
    Tier.PREMIUM: TierFeatures(
        invoice_limit=UNLIMITED,
        period_length_days=30,
        template_count=UNLIMITED,
        history_limit=30,
        history_kind=HistoryKind.DAYS,
        has_logo=True,
        has_signature=True,
        has_custom_colors=True,
        has_dashboard_totals=True,
        has_monthly_report=True,
        has_customer_management=True,
        export_qualities=frozenset({
            ExportQuality.STANDARD,
            ExportQuality.HIGH,
            ExportQuality.PRINT_READY,
        }),
    ),
}

# Tier order from least to most generous
TIER_ORDER = (Tier.FREE, Tier.PREMIUM)


def features_of(tier: Tier) -> TierFeatures:
    """Return the feature record for a tier. Total over Tier."""
    return TIER_CATALOG[Tier(tier)]


def cycle_length_days(tier: Tier) -> int:
    """
    Billing cycle length used for quota accounting.

    Tiers whose access never expires (period_length_days == 0) still reset
    their quota on the default rolling cycle.
    """
    period = features_of(tier).period_length_days
    return period if period > 0 else DEFAULT_BILLING_CYCLE_DAYS


# ---------------------------------------------------------------------------
# Feature key parsing
# ---------------------------------------------------------------------------

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
_FEATURE_VALUES = frozenset(key.value for key in FeatureKey)

# Aliases used by the product UI that do not map 1:1 onto field names
_FEATURE_ALIASES: Dict[str, FeatureKey] = {
    "history_type": FeatureKey.HISTORY_KIND,
}


def parse_feature_key(raw) -> FeatureKey:
    """
    Resolve a feature key from snake_case ("has_logo") or camelCase ("hasLogo").

    Raises:
        InvalidFeatureKeyError: If the key names no catalog feature
    """
    if isinstance(raw, FeatureKey):
        return raw
    if not isinstance(raw, str) or not raw:
        raise InvalidFeatureKeyError(str(raw))

    candidate = raw.strip()
    if candidate.lower() in _FEATURE_VALUES:
        return FeatureKey(candidate.lower())

    normalized = _CAMEL_BOUNDARY.sub("_", candidate).lower()
    if normalized in _FEATURE_ALIASES:
        return _FEATURE_ALIASES[normalized]
    try:
        return FeatureKey(normalized)
    except ValueError:
        raise InvalidFeatureKeyError(raw) from None


# ---------------------------------------------------------------------------
# Import-time checks
# ---------------------------------------------------------------------------

def dominates(premium: FeatureValue, free: FeatureValue) -> bool:
    """True if the premium value is at least as generous as the free value."""
    if premium.kind != free.kind:
        return False
    if premium.kind is FeatureKind.BOOL:
        return premium.value or not free.value
    if premium.kind is FeatureKind.COUNT:
        if premium.value == UNLIMITED:
            return True
        if free.value == UNLIMITED:
            return False
        return premium.value >= free.value
    if premium.kind is FeatureKind.QUALITIES:
        return premium.value >= free.value
    if premium.kind is FeatureKind.LABEL:
        return True
    raise ValueError(f"Unhandled feature kind: {premium.kind}")


def _validate_catalog() -> None:
    missing_kinds = set(FeatureKey) - set(FEATURE_KINDS)
    if missing_kinds:
        raise RuntimeError(f"Feature kinds missing for: {sorted(k.value for k in missing_kinds)}")

    missing_tiers = set(Tier) - set(TIER_CATALOG)
    if missing_tiers:
        raise RuntimeError(f"Tier catalog missing tiers: {sorted(t.value for t in missing_tiers)}")

    for lower, higher in zip(TIER_ORDER, TIER_ORDER[1:]):
        for key in FeatureKey:
            if not dominates(
                TIER_CATALOG[higher].feature_value(key),
                TIER_CATALOG[lower].feature_value(key),
            ):
                raise RuntimeError(
                    f"Tier catalog not monotone: {higher.value}.{key.value} "
                    f"is less generous than {lower.value}.{key.value}"
                )


_validate_catalog()
