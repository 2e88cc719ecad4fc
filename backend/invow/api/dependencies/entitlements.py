"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies for resolving the caller and
checking feature entitlements.
"""

import logging
from typing import Callable, Optional

from fastapi import Request, HTTPException, status, Depends
from sqlalchemy.orm import Session

from invow.database.session import get_db_session
from invow.entitlements.cache import EffectiveTierCache
from invow.entitlements.catalog import FeatureKey
from invow.entitlements.errors import EntitlementError
from invow.entitlements.service import EntitlementService
from invow.services.invoice_service import InvoiceService


logger = logging.getLogger(__name__)


def get_current_user_id(request: Request) -> str:
    """
    User id placed on request.state by the authentication middleware.

    Raises 401 if the request is unauthenticated.
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return user_id


def get_tier_cache(request: Request) -> Optional[EffectiveTierCache]:
    """Application-owned effective tier cache, if the app created one."""
    return getattr(request.app.state, "tier_cache", None)


def get_entitlement_service(
    db_session: Session = Depends(get_db_session),
    cache: Optional[EffectiveTierCache] = Depends(get_tier_cache),
) -> EntitlementService:
    return EntitlementService(db_session, cache=cache)


def get_invoice_service(
    db_session: Session = Depends(get_db_session),
    entitlements: EntitlementService = Depends(get_entitlement_service),
) -> InvoiceService:
    return InvoiceService(db_session, entitlements=entitlements)


def raise_http_for(error: EntitlementError) -> None:
    """Translate an entitlement error into the matching HTTP error."""
    raise HTTPException(status_code=error.http_status, detail=error.to_dict()) from error


def require_feature(feature_key: FeatureKey, feature_name: str) -> Callable:
    """
    Factory function to create a feature entitlement check dependency.

    Args:
        feature_key: The catalog feature to check
        feature_name: Human-readable name for error messages (e.g., "Custom Logo")

    Returns:
        A FastAPI dependency that returns the user id if entitled
    """

    def check_feature(
        user_id: str = Depends(get_current_user_id),
        service: EntitlementService = Depends(get_entitlement_service),
    ) -> str:
        """
        Dependency to check feature entitlement.

        Raises 402 Payment Required if the user's effective tier lacks the feature.
        """
        try:
            allowed = service.has_feature(user_id, feature_key)
        except EntitlementError as e:
            raise_http_for(e)

        if not allowed:
            logger.warning(
                f"{feature_name} access denied - not entitled",
                extra={"user_id": user_id, "feature": feature_key.value},
            )
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail=f"{feature_name} requires a premium plan",
            )

        return user_id

    return check_feature


# Pre-configured entitlement checks for premium features
require_monthly_report = require_feature(FeatureKey.HAS_MONTHLY_REPORT, "Monthly Report")
