"""
User subscription model: one row per user holding tier and quota usage.

CRITICAL: Rows are mutated only through UserSubscriptionRepository's
conditional updates. The version column is the optimistic-concurrency
guard; every write that touches usage or cycle fields bumps it.
"""

from sqlalchemy import (
    Column, String, Integer, Enum, Index, UniqueConstraint, CheckConstraint,
)

from invow.db_base import Base
from invow.entitlements.catalog import Tier
from invow.models.base import TimestampMixin, UTCDateTime, generate_uuid


class UserSubscription(Base, TimestampMixin):
    """
    Tier grant and billing-cycle usage for a single user.

    CRITICAL DESIGN:
    - ONE subscription per user
    - subscription_end_date is meaningful only for premium
    - billing_cycle_end = billing_cycle_start + cycle length of the tier
    - Replaced wholesale on tier change, never partially migrated
    """

    __tablename__ = "user_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        comment="Owner of the subscription (from authentication)"
    )

    tier = Column(
        Enum(
            Tier,
            name="subscription_tier",
            values_callable=lambda enum: [member.value for member in enum],
            native_enum=False,
        ),
        nullable=False,
        default=Tier.FREE,
        comment="Raw tier, before expiry adjustment"
    )

    subscription_end_date = Column(
        UTCDateTime,
        nullable=True,
        comment="Premium grant end; absent or past means expired"
    )

    billing_cycle_start = Column(
        UTCDateTime,
        nullable=False,
        comment="Start of the current quota accounting period"
    )
    billing_cycle_end = Column(
        UTCDateTime,
        nullable=False,
        comment="Exclusive end of the current quota accounting period"
    )

    current_period_count = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Invoices created in [billing_cycle_start, billing_cycle_end)"
    )

    version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency version"
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_subscriptions_user_id"),
        CheckConstraint("current_period_count >= 0", name="ck_user_subscriptions_count_non_negative"),
        Index("ix_user_subscriptions_tier", "tier"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(user_id={self.user_id}, tier={self.tier}, "
            f"count={self.current_period_count}, version={self.version})>"
        )
