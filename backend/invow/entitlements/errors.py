"""
Structured error classes for entitlement and quota enforcement.

Business outcomes (quota exhausted, feature denied, expired subscription)
are returned as values. Only the faults below are exceptional.
"""

from typing import Optional
from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    error_code = "ENTITLEMENT_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": str(self),
        }


class InvalidFeatureKeyError(EntitlementError):
    """
    Raised when a caller asks about a feature absent from the tier catalog.

    This is a programming error. It is never translated into a silent deny.
    """

    error_code = "INVALID_FEATURE_KEY"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, feature_key: str):
        self.feature_key = feature_key
        super().__init__(f"Unknown feature key: '{feature_key}'")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": str(self),
            "feature_key": self.feature_key,
        }


class ConcurrentUpdateConflictError(EntitlementError):
    """
    Raised when an optimistic-concurrency guard kept rejecting a write.

    Retryable by the caller with a fresh read.
    """

    error_code = "CONCURRENT_UPDATE_CONFLICT"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, user_id: str, operation: str, attempts: int):
        self.user_id = user_id
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"Concurrent update conflict for user {user_id} during {operation} "
            f"after {attempts} attempts"
        )

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": str(self),
            "operation": self.operation,
            "retryable": True,
        }


class EntitlementPersistenceError(EntitlementError):
    """Opaque persistence failure. The original exception is chained."""

    error_code = "ENTITLEMENT_PERSISTENCE_FAILED"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, user_id: str, operation: str, cause: Optional[Exception] = None):
        self.user_id = user_id
        self.operation = operation
        self.cause = cause
        super().__init__(f"Entitlement storage unavailable during {operation}")


class QuotaExceededError(EntitlementError):
    """
    Raised when a creation is committed but the quota is already used up.

    Only reachable when another request consumed the last slot between
    request_creation_slot and commit_creation, or when a caller skips the
    slot check.
    """

    error_code = "QUOTA_EXCEEDED"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, user_id: str, limit: int, current_count: int, effective_tier: str):
        self.user_id = user_id
        self.limit = limit
        self.current_count = current_count
        self.effective_tier = effective_tier
        super().__init__(
            f"Invoice limit reached ({current_count}/{limit}) on {effective_tier} tier"
        )

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": str(self),
            "limit": self.limit,
            "current_count": self.current_count,
            "effective_tier": self.effective_tier,
            "machine_readable": {
                "code": "plan_upgrade_required",
                "effective_tier": self.effective_tier,
            },
        }
