"""
Effective-tier cache with explicit TTL and invalidation hooks.

The cache is an ordinary object constructed and owned by its caller.
There is no module-level instance: an application that wants caching
builds one EffectiveTierCache at startup and passes it to each
EntitlementService.

CRITICAL: Tier changes MUST invalidate the user's entry. Entries also
never outlive the subscription end date they were computed from, so an
expiring Premium grant is not served stale.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional

from invow.config.entitlements import DEFAULT_CACHE_MAX_SIZE, DEFAULT_CACHE_TTL_SECONDS
from invow.entitlements.catalog import Tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedTier:
    """Cached effective tier for a user."""

    user_id: str
    effective_tier: Tier
    cached_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class EffectiveTierCache:
    """
    Thread-safe in-memory cache of effective tiers.

    Usage:
        cache = EffectiveTierCache(ttl_seconds=300)

        service = EntitlementService(db, cache=cache)
        service.get_effective_tier(user_id)   # computes and caches
        service.get_effective_tier(user_id)   # cache hit

        # On tier change (done by the service for upgrade/downgrade)
        cache.invalidate(user_id, reason="upgrade")
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        now: Optional[Callable[[], datetime]] = None,
    ):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._entries: Dict[str, CachedTier] = {}
        self._lock = Lock()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_size = max_size
        self._now = now or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings, now: Optional[Callable[[], datetime]] = None) -> "EffectiveTierCache":
        """Build a cache sized and timed by EntitlementSettings."""
        return cls(
            ttl_seconds=settings.cache_ttl_seconds,
            max_size=settings.cache_max_size,
            now=now,
        )

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, user_id: str) -> Optional[Tier]:
        """
        Get the cached effective tier for a user.

        Returns:
            Tier or None if not cached or expired
        """
        now = self._now()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                logger.debug("Tier cache miss", extra={"user_id": user_id})
                return None
            if entry.is_expired(now):
                del self._entries[user_id]
                logger.debug("Tier cache entry expired", extra={"user_id": user_id})
                return None
            logger.debug("Tier cache hit", extra={"user_id": user_id})
            return entry.effective_tier

    def set(
        self,
        user_id: str,
        effective_tier: Tier,
        valid_until: Optional[datetime] = None,
    ) -> CachedTier:
        """
        Cache an effective tier.

        Args:
            user_id: User identifier
            effective_tier: Tier to cache
            valid_until: Hard upper bound for the entry (e.g. the Premium
                subscription end date); the entry expires at the earlier of
                this and the TTL

        Returns:
            The stored entry
        """
        now = self._now()
        expires_at = now + self._ttl
        if valid_until is not None and valid_until < expires_at:
            expires_at = valid_until

        entry = CachedTier(
            user_id=user_id,
            effective_tier=Tier(effective_tier),
            cached_at=now,
            expires_at=expires_at,
        )
        with self._lock:
            # Evict oldest if at capacity
            if user_id not in self._entries and len(self._entries) >= self._max_size:
                oldest = min(self._entries, key=lambda k: self._entries[k].cached_at)
                del self._entries[oldest]
            self._entries[user_id] = entry
        return entry

    def invalidate(self, user_id: str, reason: Optional[str] = None) -> bool:
        """
        Drop the cached entry for a user.

        CRITICAL: Must be called whenever the user's tier changes.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            deleted = self._entries.pop(user_id, None) is not None

        if deleted:
            logger.info(
                "Invalidated effective tier cache",
                extra={"user_id": user_id, "reason": reason}
            )
        return deleted

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """
        Drop every cached entry.

        Use with caution - only for catalog deployments or emergencies.

        Returns:
            Number of entries invalidated
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()

        logger.warning(
            "Mass invalidation of effective tier cache",
            extra={"reason": reason or "mass_invalidation", "count": count}
        )
        return count
