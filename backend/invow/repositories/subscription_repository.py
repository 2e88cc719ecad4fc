"""
User subscription repository for data access operations.

Encapsulates all database operations for user subscriptions with:
- Conditional (compare-and-set) updates for every usage and cycle mutation
- Fresh reads that bypass the session identity map
- No commits: the caller owns the transaction

Every mutating method returns the number of rows it changed. Zero means
the guard rejected the write and the caller should re-read.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from invow.entitlements.catalog import UNLIMITED, Tier
from invow.models.subscription import UserSubscription

logger = logging.getLogger(__name__)


class UserSubscriptionRepository:
    """Repository for user subscription data access."""

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get_by_user_id(self, user_id: str) -> Optional[UserSubscription]:
        """
        Get the subscription row for a user, reloaded from the database.

        Conditional updates run with synchronize_session=False, so the row is
        always refreshed rather than served from the identity map.

        Args:
            user_id: User ID

        Returns:
            UserSubscription if found, None otherwise
        """
        return self.db.query(UserSubscription).filter(
            UserSubscription.user_id == user_id
        ).populate_existing().first()

    def create(
        self,
        user_id: str,
        tier: Tier,
        cycle_start: datetime,
        cycle_end: datetime,
        subscription_end_date: Optional[datetime] = None,
    ) -> UserSubscription:
        """
        Create a subscription row with a zero usage count.

        Args:
            user_id: User ID
            tier: Initial tier
            cycle_start: Start of the first accounting period
            cycle_end: Exclusive end of the first accounting period
            subscription_end_date: Premium grant end, if any

        Returns:
            Created UserSubscription
        """
        subscription = UserSubscription(
            user_id=user_id,
            tier=tier,
            subscription_end_date=subscription_end_date,
            billing_cycle_start=cycle_start,
            billing_cycle_end=cycle_end,
            current_period_count=0,
            version=1,
        )
        self.db.add(subscription)
        self.db.flush()

        logger.info(
            "User subscription created",
            extra={"user_id": user_id, "tier": Tier(tier).value}
        )
        return subscription

    def apply_rollover(
        self,
        user_id: str,
        observed_cycle_end: datetime,
        new_start: datetime,
        new_end: datetime,
    ) -> int:
        """
        Start a new accounting period and reset usage.

        Guarded on the previously observed cycle end so that two concurrent
        rollovers cannot both apply.

        Returns:
            Number of rows updated (0 if another request rolled over first)
        """
        updated = self.db.query(UserSubscription).filter(
            UserSubscription.user_id == user_id,
            UserSubscription.billing_cycle_end == observed_cycle_end,
        ).update(
            {
                UserSubscription.billing_cycle_start: new_start,
                UserSubscription.billing_cycle_end: new_end,
                UserSubscription.current_period_count: 0,
                UserSubscription.version: UserSubscription.version + 1,
            },
            synchronize_session=False,
        )
        self.db.flush()
        return updated

    def increment_if_below(self, user_id: str, limit: int, observed_version: int) -> int:
        """
        Count one admitted creation.

        Applies only if the row version is unchanged since it was read and,
        for limited tiers, the count is still below the limit.

        Returns:
            Number of rows updated (0 on conflict or exhausted quota)
        """
        query = self.db.query(UserSubscription).filter(
            UserSubscription.user_id == user_id,
            UserSubscription.version == observed_version,
        )
        if limit != UNLIMITED:
            query = query.filter(UserSubscription.current_period_count < limit)

        updated = query.update(
            {
                UserSubscription.current_period_count: UserSubscription.current_period_count + 1,
                UserSubscription.version: UserSubscription.version + 1,
            },
            synchronize_session=False,
        )
        self.db.flush()
        return updated

    def decrement_in_window(self, user_id: str, observed_cycle_start: datetime) -> int:
        """
        Release one counted creation from the current period.

        Applies only while the period observed by the caller is still current
        and the count is positive, so the counter never goes negative.

        Returns:
            Number of rows updated
        """
        updated = self.db.query(UserSubscription).filter(
            UserSubscription.user_id == user_id,
            UserSubscription.billing_cycle_start == observed_cycle_start,
            UserSubscription.current_period_count > 0,
        ).update(
            {
                UserSubscription.current_period_count: UserSubscription.current_period_count - 1,
                UserSubscription.version: UserSubscription.version + 1,
            },
            synchronize_session=False,
        )
        self.db.flush()
        return updated

    def replace(
        self,
        user_id: str,
        tier: Tier,
        subscription_end_date: Optional[datetime],
        cycle_start: datetime,
        cycle_end: datetime,
    ) -> int:
        """
        Replace the subscription wholesale on a tier change.

        Every tier, expiry, cycle and usage field is rewritten together.

        Returns:
            Number of rows updated (0 if the user has no subscription)
        """
        updated = self.db.query(UserSubscription).filter(
            UserSubscription.user_id == user_id,
        ).update(
            {
                UserSubscription.tier: tier,
                UserSubscription.subscription_end_date: subscription_end_date,
                UserSubscription.billing_cycle_start: cycle_start,
                UserSubscription.billing_cycle_end: cycle_end,
                UserSubscription.current_period_count: 0,
                UserSubscription.version: UserSubscription.version + 1,
            },
            synchronize_session=False,
        )
        self.db.flush()

        if updated:
            logger.info(
                "User subscription replaced",
                extra={"user_id": user_id, "tier": Tier(tier).value}
            )
        return updated
