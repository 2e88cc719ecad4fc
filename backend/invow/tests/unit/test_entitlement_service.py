"""
Tests for the EntitlementService facade against a real (SQLite) session.

Tests cover:
- Admission boundary and the 30-then-denied scenario
- Lazy billing-cycle rollover
- Slot release locality and non-negativity
- Expiry-driven downgrade and feature gates
- Conflict retries and persistence failure translation
- Upgrade / downgrade / usage summary
- Read-through effective tier cache
"""

import logging
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from invow.db_base import Base
from invow.entitlements.cache import EffectiveTierCache
from invow.entitlements.catalog import (
    UNLIMITED,
    ExportQuality,
    FeatureKey,
    HistoryKind,
    Tier,
)
from invow.entitlements.errors import (
    ConcurrentUpdateConflictError,
    EntitlementPersistenceError,
    InvalidFeatureKeyError,
    QuotaExceededError,
)
from invow.entitlements.service import CreationSlot, EntitlementService
from invow.models.subscription import UserSubscription
from invow.repositories.subscription_repository import UserSubscriptionRepository


USER_ID = "user_123"


@pytest.fixture
def service(db_session, clock, settings):
    return EntitlementService(db_session, now=clock, settings=settings)


@pytest.fixture
def seed(db_session, clock):
    """Factory that inserts a subscription row with the given state."""

    def _seed(
        tier=Tier.FREE,
        count=0,
        end_date=None,
        cycle_start=None,
        user_id=USER_ID,
    ) -> UserSubscription:
        start = cycle_start or clock()
        repo = UserSubscriptionRepository(db_session)
        subscription = repo.create(
            user_id,
            tier,
            start,
            start + timedelta(days=30),
            subscription_end_date=end_date,
        )
        subscription.current_period_count = count
        db_session.flush()
        return subscription

    return _seed


def _row(db_session, user_id=USER_ID) -> UserSubscription:
    return UserSubscriptionRepository(db_session).get_by_user_id(user_id)


# =============================================================================
# Admission
# =============================================================================

class TestRequestCreationSlot:

    def test_missing_subscription_is_implicit_free(self, service, db_session):
        slot = service.request_creation_slot(USER_ID)

        assert slot == CreationSlot(allowed=True, remaining=30, effective_tier=Tier.FREE)
        assert _row(db_session) is None

    def test_one_below_limit_is_allowed(self, service, seed):
        seed(count=29)

        slot = service.request_creation_slot(USER_ID)

        assert slot.allowed is True
        assert slot.remaining == 1

    def test_at_limit_is_denied(self, service, seed):
        seed(count=30)

        slot = service.request_creation_slot(USER_ID)

        assert slot.allowed is False
        assert slot.remaining == 0
        assert slot.effective_tier is Tier.FREE

    def test_does_not_mutate_counter(self, service, seed, db_session):
        seed(count=5)

        service.request_creation_slot(USER_ID)
        service.request_creation_slot(USER_ID)

        assert _row(db_session).current_period_count == 5

    def test_active_premium_is_unlimited(self, service, seed, clock):
        seed(tier=Tier.PREMIUM, count=500, end_date=clock() + timedelta(days=10))

        slot = service.request_creation_slot(USER_ID)

        assert slot.allowed is True
        assert slot.remaining == UNLIMITED
        assert slot.effective_tier is Tier.PREMIUM

    def test_expired_premium_falls_back_to_free_limit(self, service, seed, clock):
        seed(tier=Tier.PREMIUM, count=45, end_date=clock() - timedelta(days=1))

        slot = service.request_creation_slot(USER_ID)

        assert slot == CreationSlot(allowed=False, remaining=0, effective_tier=Tier.FREE)


class TestCommitCreation:

    def test_thirty_creations_then_denied(self, service, db_session):
        for expected in range(1, 31):
            assert service.request_creation_slot(USER_ID).allowed is True
            assert service.commit_creation(USER_ID) == expected

        slot = service.request_creation_slot(USER_ID)
        assert slot.allowed is False
        assert slot.remaining == 0
        assert _row(db_session).current_period_count == 30

    def test_first_commit_creates_free_subscription(self, service, db_session, clock):
        service.commit_creation(USER_ID)

        row = _row(db_session)
        assert row.tier == Tier.FREE
        assert row.current_period_count == 1
        assert row.billing_cycle_start == clock()
        assert row.billing_cycle_end == clock() + timedelta(days=30)

    def test_commit_past_limit_raises(self, service, seed, db_session):
        seed(count=30)

        with pytest.raises(QuotaExceededError) as exc_info:
            service.commit_creation(USER_ID)

        assert exc_info.value.limit == 30
        assert exc_info.value.to_dict()["error"] == "QUOTA_EXCEEDED"
        assert _row(db_session).current_period_count == 30

    def test_commit_bumps_version(self, service, seed, db_session):
        original_version = seed(count=3).version

        service.commit_creation(USER_ID)

        assert _row(db_session).version == original_version + 1

    def test_conflicting_writer_triggers_retry(self, service, seed, db_session):
        seed(count=0)
        real_increment = service._repo.increment_if_below
        calls = []

        def racing_increment(user_id, limit, observed_version):
            calls.append(observed_version)
            if len(calls) == 1:
                # Another request commits first with the same observed version
                real_increment(user_id, limit, observed_version)
            return real_increment(user_id, limit, observed_version)

        service._repo.increment_if_below = racing_increment

        assert service.commit_creation(USER_ID) == 2
        assert len(calls) == 2
        assert calls[1] == calls[0] + 1
        assert _row(db_session).current_period_count == 2

    def test_last_slot_taken_by_racing_writer_raises_quota(self, service, seed, db_session):
        seed(count=29)
        real_increment = service._repo.increment_if_below

        def racing_increment(user_id, limit, observed_version):
            real_increment(user_id, limit, observed_version)
            return real_increment(user_id, limit, observed_version)

        service._repo.increment_if_below = racing_increment

        with pytest.raises(QuotaExceededError):
            service.commit_creation(USER_ID)
        assert _row(db_session).current_period_count == 30

    def test_persistent_conflict_raises_after_retry_budget(self, service, seed):
        seed(count=0)
        service._repo.increment_if_below = MagicMock(return_value=0)

        with pytest.raises(ConcurrentUpdateConflictError) as exc_info:
            service.commit_creation(USER_ID)

        assert service._repo.increment_if_below.call_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.to_dict()["retryable"] is True


# =============================================================================
# Rollover
# =============================================================================

class TestLazyRollover:

    def test_rollover_at_exact_boundary_resets_count(self, service, seed, clock, db_session):
        start = clock()
        seed(count=30, cycle_start=start)
        clock.set(start + timedelta(days=30))

        slot = service.request_creation_slot(USER_ID)

        assert slot.allowed is True
        assert slot.remaining == 30
        row = _row(db_session)
        assert row.current_period_count == 0
        assert row.billing_cycle_start == clock()
        assert row.billing_cycle_end == clock() + timedelta(days=30)

    def test_no_rollover_one_unit_before_boundary(self, service, seed, clock, db_session):
        start = clock()
        seed(count=30, cycle_start=start)
        clock.set(start + timedelta(days=30) - timedelta(microseconds=1))

        slot = service.request_creation_slot(USER_ID)

        assert slot.allowed is False
        row = _row(db_session)
        assert row.current_period_count == 30
        assert row.billing_cycle_start == start

    def test_feature_check_applies_rollover(self, service, seed, clock, db_session):
        seed(count=12)
        clock.advance(days=31)

        service.has_feature(USER_ID, FeatureKey.HAS_LOGO)

        assert _row(db_session).current_period_count == 0

    def test_rollover_is_applied_once(self, service, seed, clock, db_session):
        seed(count=7)
        clock.advance(days=30)

        service.request_creation_slot(USER_ID)
        version_after_first = _row(db_session).version
        service.request_creation_slot(USER_ID)

        assert _row(db_session).version == version_after_first

    def test_rollover_lost_to_concurrent_request_rereads(self, service, seed, clock, db_session):
        seed(count=7)
        clock.advance(days=30)
        real_rollover = service._repo.apply_rollover

        def racing_rollover(user_id, observed_end, new_start, new_end):
            # A concurrent request rolls over first; this write is now stale
            real_rollover(user_id, observed_end, new_start, new_end)
            return real_rollover(user_id, observed_end, new_start, new_end)

        service._repo.apply_rollover = racing_rollover

        slot = service.request_creation_slot(USER_ID)

        assert slot.remaining == 30
        assert _row(db_session).current_period_count == 0

    def test_commit_after_rollover_counts_in_new_cycle(self, service, seed, clock, db_session):
        seed(count=30)
        clock.advance(days=45)

        assert service.commit_creation(USER_ID) == 1
        assert _row(db_session).billing_cycle_start == clock()


# =============================================================================
# Release
# =============================================================================

class TestReleaseCreationSlot:

    def test_release_inside_window_decrements(self, service, seed, clock, db_session):
        seed(count=5)

        assert service.release_creation_slot(USER_ID, clock() + timedelta(hours=1)) == 4
        assert _row(db_session).current_period_count == 4

    def test_release_at_zero_stays_zero(self, service, seed, clock, db_session):
        seed(count=0)

        assert service.release_creation_slot(USER_ID, clock()) == 0
        assert _row(db_session).current_period_count == 0

    def test_release_of_prior_period_resource_is_ignored(self, service, seed, clock, db_session):
        seed(count=5)

        assert service.release_creation_slot(USER_ID, clock() - timedelta(days=3)) == 5
        assert _row(db_session).current_period_count == 5

    def test_release_after_rollover_ignores_old_resource(self, service, seed, clock, db_session):
        created_at = clock() + timedelta(days=1)
        seed(count=5)
        clock.advance(days=31)

        assert service.release_creation_slot(USER_ID, created_at) == 0

    def test_release_accepts_naive_utc_timestamp(self, service, seed, clock):
        seed(count=2)
        naive = (clock() + timedelta(minutes=5)).replace(tzinfo=None)

        assert service.release_creation_slot(USER_ID, naive) == 1

    def test_release_without_subscription_is_noop(self, service, db_session, clock):
        assert service.release_creation_slot(USER_ID, clock()) == 0
        assert _row(db_session) is None

    def test_release_reopens_exhausted_quota(self, service, seed, clock):
        seed(count=30)
        assert service.request_creation_slot(USER_ID).allowed is False

        service.release_creation_slot(USER_ID, clock())

        assert service.request_creation_slot(USER_ID).allowed is True


# =============================================================================
# Features and tier
# =============================================================================

class TestFeatures:

    def test_expired_premium_has_no_logo(self, service, seed, clock):
        seed(tier=Tier.PREMIUM, end_date=clock() - timedelta(days=1))

        assert service.has_feature(USER_ID, "hasLogo") is False
        assert service.get_effective_tier(USER_ID) is Tier.FREE

    def test_active_premium_has_logo(self, service, seed, clock):
        seed(tier=Tier.PREMIUM, end_date=clock() + timedelta(days=1))

        assert service.has_feature(USER_ID, "hasLogo") is True
        assert service.is_premium(USER_ID) is True

    def test_missing_subscription_gets_free_features(self, service):
        assert service.has_feature(USER_ID, FeatureKey.HAS_SIGNATURE) is False
        assert service.has_feature(USER_ID, FeatureKey.EXPORT_QUALITIES) is True
        assert service.get_effective_tier(USER_ID) is Tier.FREE

    def test_expiry_detected_lazily_on_next_access(self, service, seed, clock):
        seed(tier=Tier.PREMIUM, end_date=clock() + timedelta(hours=1))
        assert service.has_feature(USER_ID, "hasMonthlyReport") is True

        clock.advance(hours=1)

        assert service.has_feature(USER_ID, "hasMonthlyReport") is False

    def test_invalid_feature_key_raises_and_alerts(self, service, caplog):
        with caplog.at_level(logging.CRITICAL, logger="invow.entitlements.service"):
            with pytest.raises(InvalidFeatureKeyError):
                service.has_feature(USER_ID, "hasTeleport")

        assert any("ENTITLEMENT_SUPPORT_ALERT" in r.getMessage() for r in caplog.records)

    def test_tier_convenience_lookups(self, service, seed, clock):
        assert service.history_limit(USER_ID) == (10, HistoryKind.ITEMS)
        assert service.available_template_count(USER_ID) == 1
        assert service.export_qualities(USER_ID) == frozenset({ExportQuality.STANDARD})

        seed(tier=Tier.PREMIUM, end_date=clock() + timedelta(days=5))

        assert service.history_limit(USER_ID) == (30, HistoryKind.DAYS)
        assert service.available_template_count(USER_ID) == UNLIMITED
        assert ExportQuality.PRINT_READY in service.export_qualities(USER_ID)


class TestCachedTier:

    @pytest.fixture
    def cached_service(self, db_session, clock, settings):
        cache = EffectiveTierCache(ttl_seconds=300, now=clock)
        return EntitlementService(db_session, now=clock, cache=cache, settings=settings), cache

    def test_second_lookup_is_served_from_cache(self, cached_service, seed):
        service, cache = cached_service
        seed()
        service.get_effective_tier(USER_ID)
        service._repo.get_by_user_id = MagicMock(side_effect=AssertionError("db hit"))

        assert service.get_effective_tier(USER_ID) is Tier.FREE

    def test_cached_premium_expires_with_subscription(self, cached_service, seed, clock):
        service, cache = cached_service
        seed(tier=Tier.PREMIUM, end_date=clock() + timedelta(seconds=30))
        assert service.has_feature(USER_ID, "hasLogo") is True

        clock.advance(seconds=30)

        assert cache.get(USER_ID) is None
        assert service.has_feature(USER_ID, "hasLogo") is False

    def test_upgrade_invalidates_cache(self, cached_service):
        service, cache = cached_service
        assert service.get_effective_tier(USER_ID) is Tier.FREE

        service.upgrade_to_premium(USER_ID)

        assert service.get_effective_tier(USER_ID) is Tier.PREMIUM

    def test_downgrade_invalidates_cache(self, cached_service):
        service, cache = cached_service
        service.upgrade_to_premium(USER_ID)
        assert service.get_effective_tier(USER_ID) is Tier.PREMIUM

        service.downgrade_to_free(USER_ID)

        assert service.get_effective_tier(USER_ID) is Tier.FREE


# =============================================================================
# Subscription management
# =============================================================================

class TestSubscriptionManagement:

    def test_ensure_subscription_is_idempotent(self, service, db_session):
        first = service.ensure_subscription(USER_ID)
        second = service.ensure_subscription(USER_ID)

        assert first.id == second.id
        assert db_session.query(UserSubscription).count() == 1

    def test_upgrade_free_user_starts_thirty_days(self, service, seed, clock, db_session):
        seed(count=30)

        summary = service.upgrade_to_premium(USER_ID)

        assert summary.effective_tier is Tier.PREMIUM
        assert summary.subscription_end_date == clock() + timedelta(days=30)
        assert summary.current_count == 0
        assert summary.remaining == UNLIMITED
        assert summary.cycle_start == clock()

    def test_upgrade_without_subscription_creates_row(self, service, db_session, clock):
        service.upgrade_to_premium(USER_ID, days=7)

        row = _row(db_session)
        assert row.tier == Tier.PREMIUM
        assert row.subscription_end_date == clock() + timedelta(days=7)

    def test_upgrade_active_premium_extends_from_end_date(self, service, seed, clock):
        seed(tier=Tier.PREMIUM, end_date=clock() + timedelta(days=10))

        summary = service.upgrade_to_premium(USER_ID)

        assert summary.subscription_end_date == clock() + timedelta(days=40)

    def test_upgrade_expired_premium_starts_from_now(self, service, seed, clock):
        seed(tier=Tier.PREMIUM, end_date=clock() - timedelta(days=10))

        summary = service.upgrade_to_premium(USER_ID)

        assert summary.subscription_end_date == clock() + timedelta(days=30)

    def test_upgrade_rejects_non_positive_days(self, service):
        with pytest.raises(ValueError):
            service.upgrade_to_premium(USER_ID, days=0)

    def test_downgrade_replaces_row(self, service, seed, clock, db_session):
        seed(tier=Tier.PREMIUM, count=80, end_date=clock() + timedelta(days=10))

        summary = service.downgrade_to_free(USER_ID)

        assert summary.tier is Tier.FREE
        assert summary.subscription_end_date is None
        assert summary.current_count == 0
        assert summary.limit == 30

    def test_usage_summary_for_missing_user(self, service, clock):
        summary = service.get_usage_summary(USER_ID)

        assert summary.tier is Tier.FREE
        assert summary.current_count == 0
        assert summary.remaining == 30
        assert summary.limit_exceeded is False
        assert summary.cycle_end == clock() + timedelta(days=30)

    def test_usage_summary_reports_exhausted_quota(self, service, seed):
        seed(count=30)

        summary = service.get_usage_summary(USER_ID)

        assert summary.limit_exceeded is True
        assert summary.to_dict()["remaining"] == 0

    def test_usage_summary_for_expired_premium(self, service, seed, clock):
        seed(tier=Tier.PREMIUM, count=3, end_date=clock() - timedelta(seconds=1))

        summary = service.get_usage_summary(USER_ID)

        assert summary.tier is Tier.PREMIUM
        assert summary.effective_tier is Tier.FREE
        assert summary.is_active is False
        assert summary.remaining == 27


# =============================================================================
# Persistence failures
# =============================================================================

class TestPersistenceFailures:

    @pytest.fixture
    def broken_session(self):
        session = MagicMock()
        session.query.side_effect = OperationalError("SELECT", {}, Exception("connection lost"))
        return session

    def test_slot_request_wraps_storage_error(self, broken_session, clock, settings):
        service = EntitlementService(broken_session, now=clock, settings=settings)

        with pytest.raises(EntitlementPersistenceError) as exc_info:
            service.request_creation_slot(USER_ID)

        assert isinstance(exc_info.value.cause, OperationalError)
        assert exc_info.value.operation == "request_creation_slot"

    def test_feature_check_wraps_storage_error(self, broken_session, clock, settings):
        service = EntitlementService(broken_session, now=clock, settings=settings)

        with pytest.raises(EntitlementPersistenceError):
            service.has_feature(USER_ID, "hasLogo")


# =============================================================================
# Release logging
# =============================================================================

class TestReleaseLogging:

    def _messages(self, caplog):
        return [record.getMessage() for record in caplog.records]

    def test_in_window_release_at_zero_is_reported_as_floor(self, service, seed, clock, caplog):
        seed(count=0)

        with caplog.at_level(logging.DEBUG, logger="invow.entitlements.service"):
            service.release_creation_slot(USER_ID, clock())

        messages = self._messages(caplog)
        assert any("already at zero" in m for m in messages)
        assert not any("not counted in current period" in m for m in messages)

    def test_prior_period_release_is_reported_as_uncounted(self, service, seed, clock, caplog):
        seed(count=4)

        with caplog.at_level(logging.DEBUG, logger="invow.entitlements.service"):
            service.release_creation_slot(USER_ID, clock() - timedelta(days=2))

        messages = self._messages(caplog)
        assert any("not counted in current period" in m for m in messages)
        assert not any("already at zero" in m for m in messages)


# =============================================================================
# Cache coherence with transactions
# =============================================================================

class TestCacheRollover:

    def test_cache_hit_defers_rollover_to_quota_path(self, db_session, seed, clock, settings):
        cache = EffectiveTierCache(ttl_seconds=60 * 60 * 24 * 60, now=clock)
        service = EntitlementService(db_session, now=clock, cache=cache, settings=settings)
        seed(count=12)
        assert service.has_feature(USER_ID, "hasLogo") is False

        clock.advance(days=31)

        assert service.has_feature(USER_ID, "hasLogo") is False
        assert _row(db_session).current_period_count == 12

        slot = service.request_creation_slot(USER_ID)

        assert slot.remaining == 30
        assert _row(db_session).current_period_count == 0


class TestCacheInvalidationOnTransactionEnd:

    @pytest.fixture
    def session_factory(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'tiers.db'}")
        Base.metadata.create_all(bind=engine)
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
        engine.dispose()

    @pytest.fixture
    def cache(self, clock):
        return EffectiveTierCache(ttl_seconds=300, now=clock)

    def test_tier_cached_by_other_session_before_commit_is_dropped(
        self, session_factory, cache, clock, settings
    ):
        writer = session_factory()
        reader = session_factory()
        try:
            EntitlementService(writer, now=clock, cache=cache, settings=settings).upgrade_to_premium(USER_ID)

            reader_service = EntitlementService(reader, now=clock, cache=cache, settings=settings)
            assert reader_service.get_effective_tier(USER_ID) is Tier.FREE
            reader.rollback()

            writer.commit()

            assert cache.get(USER_ID) is None
            assert reader_service.get_effective_tier(USER_ID) is Tier.PREMIUM
        finally:
            writer.close()
            reader.close()

    def test_rolled_back_upgrade_is_not_served_from_cache(self, session_factory, cache, clock, settings):
        session = session_factory()
        try:
            service = EntitlementService(session, now=clock, cache=cache, settings=settings)
            service.upgrade_to_premium(USER_ID)
            assert service.get_effective_tier(USER_ID) is Tier.PREMIUM

            session.rollback()

            assert cache.get(USER_ID) is None
            assert service.get_effective_tier(USER_ID) is Tier.FREE
        finally:
            session.close()
