"""
Entitlement Service: single entry point for quota and feature decisions.

Provides:
- request_creation_slot(user_id)            → CreationSlot
- commit_creation(user_id)                  → new period count
- release_creation_slot(user_id, created_at)
- has_feature(user_id, feature_key)         → bool
- get_effective_tier(user_id)               → Tier
- Subscription management (ensure / upgrade / downgrade / usage summary)

Architecture:
- Lazy rollover: every operation first rolls an elapsed billing cycle
  over (guarded on the observed cycle end), there is no background job
- Admission is a single conditional UPDATE (count < limit AND version
  unchanged), retried on conflict up to the configured budget
- Missing subscription row = implicit Free with zero usage
- Business outcomes are values; only faults raise

CRITICAL: This is the ONLY module that should be used to make quota or
feature decisions. Do NOT call the repository or resolver directly for
user-facing checks. Nothing here commits: the caller owns the transaction
so that usage changes land atomically with the invoice they describe.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from invow.config.entitlements import EntitlementSettings, get_entitlement_settings
from invow.entitlements import billing_cycle, resolver, usage_counter
from invow.entitlements.cache import EffectiveTierCache
from invow.entitlements.catalog import (
    ExportQuality,
    HistoryKind,
    Tier,
    cycle_length_days,
    features_of,
    parse_feature_key,
)
from invow.entitlements.errors import (
    ConcurrentUpdateConflictError,
    EntitlementPersistenceError,
    InvalidFeatureKeyError,
    QuotaExceededError,
)
from invow.models.base import utcnow
from invow.models.subscription import UserSubscription
from invow.repositories.subscription_repository import UserSubscriptionRepository

logger = logging.getLogger(__name__)

DEFAULT_UPGRADE_DAYS = 30


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CreationSlot:
    """Answer to "may this user create one more invoice right now?"."""

    allowed: bool
    remaining: int
    effective_tier: Tier

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "effective_tier": self.effective_tier.value,
        }


@dataclass(frozen=True)
class UsageSummary:
    """Snapshot of a user's tier and billing-period usage."""

    user_id: str
    tier: Tier
    effective_tier: Tier
    is_active: bool
    limit: int
    current_count: int
    remaining: int
    limit_exceeded: bool
    cycle_start: Optional[datetime]
    cycle_end: Optional[datetime]
    subscription_end_date: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "effective_tier": self.effective_tier.value,
            "is_active": self.is_active,
            "limit": self.limit,
            "current_count": self.current_count,
            "remaining": self.remaining,
            "limit_exceeded": self.limit_exceeded,
            "cycle_start": _isoformat(self.cycle_start),
            "cycle_end": _isoformat(self.cycle_end),
            "subscription_end_date": _isoformat(self.subscription_end_date),
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# EntitlementService
# ---------------------------------------------------------------------------

class EntitlementService:
    """
    Central entitlement and quota service.

    One instance per request / job.  Stateless between calls except for
    injected collaborators (db, clock, cache, settings).
    """

    def __init__(
        self,
        db_session: Session,
        now: Optional[Callable[[], datetime]] = None,
        cache: Optional[EffectiveTierCache] = None,
        settings: Optional[EntitlementSettings] = None,
    ):
        self.db = db_session
        self._repo = UserSubscriptionRepository(db_session)
        self._now = now or utcnow
        self._cache = cache
        self._settings = settings or get_entitlement_settings()

    # ------------------------------------------------------------------
    # Quota API
    # ------------------------------------------------------------------

    def request_creation_slot(self, user_id: str) -> CreationSlot:
        """
        Check whether the user may create one more invoice.

        Applies any pending billing-cycle rollover, then checks the
        effective tier's limit. Does NOT consume the slot.
        """
        now = self._now()
        with self._storage(user_id, "request_creation_slot"):
            subscription = self._load_current(user_id, now)

        tier = resolver.effective_tier(subscription, now)
        limit = features_of(tier).invoice_limit
        count = subscription.current_period_count if subscription is not None else 0

        slot = CreationSlot(
            allowed=usage_counter.can_create(limit, count),
            remaining=usage_counter.remaining(limit, count),
            effective_tier=tier,
        )
        if not slot.allowed:
            logger.warning(
                "Invoice quota exhausted",
                extra={"user_id": user_id, "tier": tier.value, "limit": limit, "count": count}
            )
        return slot

    def commit_creation(self, user_id: str) -> int:
        """
        Count one invoice creation against the current period.

        Must run in the same transaction as the invoice insert. The increment
        is a conditional update; when another writer changed the row first
        the row is re-read and the update retried.

        Returns:
            The period count after this creation

        Raises:
            QuotaExceededError: If the quota was used up before this commit
            ConcurrentUpdateConflictError: If the retry budget is exhausted
        """
        now = self._now()
        attempts = self._settings.max_retries

        with self._storage(user_id, "commit_creation"):
            for attempt in range(1, attempts + 1):
                subscription = self._load_current(user_id, now)
                if subscription is None:
                    subscription = self._create_subscription(user_id, Tier.FREE, now)

                tier = resolver.effective_tier(subscription, now)
                limit = features_of(tier).invoice_limit
                count = subscription.current_period_count

                if not usage_counter.can_create(limit, count):
                    logger.warning(
                        "Invoice creation rejected at commit - quota exhausted",
                        extra={"user_id": user_id, "tier": tier.value, "limit": limit, "count": count}
                    )
                    raise QuotaExceededError(user_id, limit, count, tier.value)

                if self._repo.increment_if_below(user_id, limit, subscription.version):
                    new_count = usage_counter.record_creation(count)
                    logger.info(
                        "Invoice creation counted",
                        extra={"user_id": user_id, "tier": tier.value, "count": new_count, "limit": limit}
                    )
                    return new_count

                logger.warning(
                    "Usage update conflict, retrying",
                    extra={"user_id": user_id, "operation": "commit_creation", "attempt": attempt}
                )

        raise ConcurrentUpdateConflictError(user_id, "commit_creation", attempts)

    def release_creation_slot(self, user_id: str, resource_created_at: datetime) -> int:
        """
        Give back the slot of a deleted invoice.

        Must run in the same transaction as the invoice delete. Only invoices
        created inside the current period decrement, and the count never
        goes below zero. Status changes must never call this.

        Returns:
            The period count after the release
        """
        created_at = _as_utc(resource_created_at)
        now = self._now()
        attempts = self._settings.max_retries

        with self._storage(user_id, "release_creation_slot"):
            for attempt in range(1, attempts + 1):
                subscription = self._load_current(user_id, now)
                if subscription is None:
                    return 0

                count = subscription.current_period_count
                cycle_start = subscription.billing_cycle_start
                expected = usage_counter.record_deletion(
                    count, created_at, cycle_start, subscription.billing_cycle_end,
                )
                if expected == count:
                    if usage_counter.in_window(created_at, cycle_start, subscription.billing_cycle_end):
                        logger.warning(
                            "Deleted invoice in current period but usage counter already at zero",
                            extra={"user_id": user_id, "count": count}
                        )
                    else:
                        logger.debug(
                            "Deleted invoice not counted in current period",
                            extra={"user_id": user_id, "count": count}
                        )
                    return count

                if self._repo.decrement_in_window(user_id, cycle_start):
                    logger.info(
                        "Invoice slot released",
                        extra={"user_id": user_id, "count": expected}
                    )
                    return expected

                logger.warning(
                    "Usage update conflict, retrying",
                    extra={"user_id": user_id, "operation": "release_creation_slot", "attempt": attempt}
                )

        raise ConcurrentUpdateConflictError(user_id, "release_creation_slot", attempts)

    # ------------------------------------------------------------------
    # Feature API
    # ------------------------------------------------------------------

    def has_feature(self, user_id: str, feature_key) -> bool:
        """
        Check a feature against the user's effective tier.

        Accepts FeatureKey members, snake_case or camelCase names. Served
        from the effective tier cache when one was supplied (see
        get_effective_tier for how that interacts with rollover).

        Raises:
            InvalidFeatureKeyError: If the key names no catalog feature
        """
        try:
            key = parse_feature_key(feature_key)
        except InvalidFeatureKeyError as exc:
            self._emit_support_alert(user_id, exc)
            raise

        tier = self.get_effective_tier(user_id)
        return resolver.can_access_feature(tier, key)

    def get_effective_tier(self, user_id: str) -> Tier:
        """
        Tier actually granted right now.

        Reads through the cache when one was supplied. A miss applies any
        pending rollover, resolves expiry and caches the result until the
        earlier of the TTL and the Premium end date.

        A cache hit does not touch the row, so a pending rollover is not
        persisted here. The answer is unaffected (rollover only resets the
        usage counter, never the tier) and every quota operation bypasses
        the cache and applies the rollover itself.
        """
        if self._cache is not None:
            cached = self._cache.get(user_id)
            if cached is not None:
                return cached

        now = self._now()
        with self._storage(user_id, "get_effective_tier"):
            subscription = self._load_current(user_id, now)
        tier = resolver.effective_tier(subscription, now)

        if self._cache is not None:
            valid_until = subscription.subscription_end_date if tier is Tier.PREMIUM else None
            self._cache.set(user_id, tier, valid_until=valid_until)
        return tier

    def is_premium(self, user_id: str) -> bool:
        return self.get_effective_tier(user_id) is Tier.PREMIUM

    def history_limit(self, user_id: str) -> Tuple[int, HistoryKind]:
        """Invoice history window as (limit, kind) for the effective tier."""
        features = features_of(self.get_effective_tier(user_id))
        return features.history_limit, features.history_kind

    def available_template_count(self, user_id: str) -> int:
        return features_of(self.get_effective_tier(user_id)).template_count

    def export_qualities(self, user_id: str) -> FrozenSet[ExportQuality]:
        return features_of(self.get_effective_tier(user_id)).export_qualities

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------

    def ensure_subscription(self, user_id: str) -> UserSubscription:
        """Create the Free subscription row on signup. Idempotent."""
        now = self._now()
        with self._storage(user_id, "ensure_subscription"):
            subscription = self._load_current(user_id, now)
            if subscription is None:
                subscription = self._create_subscription(user_id, Tier.FREE, now)
        return subscription

    def upgrade_to_premium(self, user_id: str, days: int = DEFAULT_UPGRADE_DAYS) -> UsageSummary:
        """
        Grant Premium for a number of days.

        An active Premium grant is extended from its current end date. An
        expired grant (or a Free user) starts a new period from now. The row
        is replaced wholesale: fresh billing cycle, zero usage.
        """
        if days <= 0:
            raise ValueError("days must be positive")

        now = self._now()
        with self._storage(user_id, "upgrade_to_premium"):
            subscription = self._repo.get_by_user_id(user_id)
            if resolver.effective_tier(subscription, now) is Tier.PREMIUM:
                base = subscription.subscription_end_date
            else:
                base = now
            end_date = base + timedelta(days=days)
            self._replace(user_id, subscription, Tier.PREMIUM, end_date, now)

        self._invalidate(user_id, f"tier_change:upgrade:+{days}d")
        logger.info(
            "Subscription upgraded to premium",
            extra={"user_id": user_id, "days": days, "subscription_end_date": end_date.isoformat()}
        )
        return self.get_usage_summary(user_id)

    def downgrade_to_free(self, user_id: str) -> UsageSummary:
        """Replace the subscription wholesale with Free."""
        now = self._now()
        with self._storage(user_id, "downgrade_to_free"):
            subscription = self._repo.get_by_user_id(user_id)
            self._replace(user_id, subscription, Tier.FREE, None, now)

        self._invalidate(user_id, "tier_change:downgrade")
        logger.info("Subscription downgraded to free", extra={"user_id": user_id})
        return self.get_usage_summary(user_id)

    def get_usage_summary(self, user_id: str) -> UsageSummary:
        """Current tier, quota usage and the date the quota resets."""
        now = self._now()
        with self._storage(user_id, "get_usage_summary"):
            subscription = self._load_current(user_id, now)

        tier = resolver.effective_tier(subscription, now)
        limit = features_of(tier).invoice_limit
        if subscription is None:
            cycle_start, cycle_end = billing_cycle.initial_cycle(Tier.FREE, now)
            return UsageSummary(
                user_id=user_id,
                tier=Tier.FREE,
                effective_tier=tier,
                is_active=True,
                limit=limit,
                current_count=0,
                remaining=usage_counter.remaining(limit, 0),
                limit_exceeded=False,
                cycle_start=cycle_start,
                cycle_end=cycle_end,
                subscription_end_date=None,
            )

        count = subscription.current_period_count
        return UsageSummary(
            user_id=user_id,
            tier=Tier(subscription.tier),
            effective_tier=tier,
            is_active=resolver.is_active(subscription, now),
            limit=limit,
            current_count=count,
            remaining=usage_counter.remaining(limit, count),
            limit_exceeded=not usage_counter.can_create(limit, count),
            cycle_start=subscription.billing_cycle_start,
            cycle_end=subscription.billing_cycle_end,
            subscription_end_date=subscription.subscription_end_date,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_current(self, user_id: str, now: datetime) -> Optional[UserSubscription]:
        """
        Read the subscription, rolling an elapsed billing cycle over first.

        The rollover write is guarded on the cycle end this call observed,
        so concurrent requests apply it exactly once.
        """
        attempts = self._settings.max_retries
        for attempt in range(1, attempts + 1):
            subscription = self._repo.get_by_user_id(user_id)
            if subscription is None:
                return None

            evaluation = billing_cycle.evaluate(
                subscription.billing_cycle_start,
                cycle_length_days(subscription.tier),
                now,
            )
            if not evaluation.rolled_over:
                return subscription

            if self._repo.apply_rollover(
                user_id,
                subscription.billing_cycle_end,
                evaluation.new_start,
                evaluation.new_end,
            ):
                logger.info(
                    "Billing cycle rolled over",
                    extra={
                        "user_id": user_id,
                        "previous_count": subscription.current_period_count,
                        "cycle_start": evaluation.new_start.isoformat(),
                        "cycle_end": evaluation.new_end.isoformat(),
                    }
                )
                return self._repo.get_by_user_id(user_id)

            logger.warning(
                "Rollover conflict, re-reading",
                extra={"user_id": user_id, "attempt": attempt}
            )

        raise ConcurrentUpdateConflictError(user_id, "rollover", attempts)

    def _create_subscription(self, user_id: str, tier: Tier, now: datetime) -> UserSubscription:
        cycle_start, cycle_end = billing_cycle.initial_cycle(tier, now)
        try:
            return self._repo.create(user_id, tier, cycle_start, cycle_end)
        except IntegrityError as exc:
            # Another request created the row first; the session must be
            # rolled back before the caller retries.
            raise ConcurrentUpdateConflictError(user_id, "create_subscription", 1) from exc

    def _replace(
        self,
        user_id: str,
        subscription: Optional[UserSubscription],
        tier: Tier,
        end_date: Optional[datetime],
        now: datetime,
    ) -> None:
        cycle_start, cycle_end = billing_cycle.initial_cycle(tier, now)
        if subscription is None:
            try:
                self._repo.create(user_id, tier, cycle_start, cycle_end, subscription_end_date=end_date)
            except IntegrityError as exc:
                raise ConcurrentUpdateConflictError(user_id, "create_subscription", 1) from exc
            return
        self._repo.replace(user_id, tier, end_date, cycle_start, cycle_end)

    def _invalidate(self, user_id: str, reason: str) -> None:
        """
        Drop the user's cached tier now and again when the transaction ends.

        Until the caller commits, other sessions still read the old row and
        may re-cache the old tier; on rollback this session may have cached
        a tier that never landed. Either way the entry is dropped once more
        when the session's transaction commits or rolls back.
        """
        if self._cache is None:
            return
        cache = self._cache
        cache.invalidate(user_id, reason)

        def _after_commit(session):
            cache.invalidate(user_id, f"{reason}:committed")

        def _after_rollback(session):
            cache.invalidate(user_id, f"{reason}:rolled_back")

        event.listen(self.db, "after_commit", _after_commit, once=True)
        event.listen(self.db, "after_rollback", _after_rollback, once=True)

    @contextmanager
    def _storage(self, user_id: str, operation: str):
        """Translate storage failures into an opaque EntitlementPersistenceError."""
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error(
                "Entitlement storage failure",
                extra={"user_id": user_id, "operation": operation, "error": str(exc)}
            )
            raise EntitlementPersistenceError(user_id, operation, cause=exc) from exc

    @staticmethod
    def _emit_support_alert(user_id: str, error: Exception) -> None:
        """
        Emit a structured alert for an impossible feature lookup.

        Uses CRITICAL log level so monitoring picks it up.
        """
        logger.critical(
            "ENTITLEMENT_SUPPORT_ALERT: unknown feature key",
            extra={
                "user_id": user_id,
                "error_type": type(error).__name__,
                "error_message": str(error),
                "alert_type": "invalid_feature_key",
            },
        )
