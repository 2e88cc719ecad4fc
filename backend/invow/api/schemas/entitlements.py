"""
Pydantic schemas for the entitlements and invoices APIs.

Request and response models for quota, feature and invoice endpoints.
"""

from typing import Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Entitlement Models
# =============================================================================


class CreationSlotResponse(BaseModel):
    """Whether the user may create one more invoice right now."""

    allowed: bool = Field(..., description="True if a creation would be admitted")
    remaining: int = Field(..., description="Creations left this period; -1 means unlimited")
    effective_tier: str = Field(..., description="Tier in force after expiry adjustment")


class FeatureAccessResponse(BaseModel):
    """Result of a feature gate check."""

    feature_key: str = Field(..., description="Canonical feature key")
    allowed: bool = Field(..., description="True if the effective tier grants the feature")
    effective_tier: str


class EffectiveTierResponse(BaseModel):
    """Tier currently in force for the user."""

    effective_tier: str


class UsageSummaryResponse(BaseModel):
    """Tier and billing-period usage."""

    tier: str = Field(..., description="Raw subscription tier")
    effective_tier: str = Field(..., description="Tier in force after expiry adjustment")
    is_active: bool
    limit: int = Field(..., description="Invoices per period; -1 means unlimited")
    current_count: int = Field(..., ge=0)
    remaining: int
    limit_exceeded: bool
    cycle_start: Optional[datetime] = None
    cycle_end: Optional[datetime] = Field(None, description="When the quota resets")
    subscription_end_date: Optional[datetime] = None


class UpgradeRequest(BaseModel):
    """Request to grant Premium."""

    days: int = Field(30, gt=0, le=3660, description="Days of Premium to grant")


# =============================================================================
# Invoice Models
# =============================================================================


class CreateInvoiceRequest(BaseModel):
    """Request to create an invoice."""

    invoice_number: str = Field(..., min_length=1, max_length=100)


class UpdateInvoiceStatusRequest(BaseModel):
    """Request to change an invoice status."""

    status: str = Field(..., description="draft, pending or synced")


class InvoiceResponse(BaseModel):
    """A single invoice."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_number: str
    status: str
    created_at: datetime


class DeleteInvoiceResponse(BaseModel):
    """Outcome of an invoice deletion."""

    deleted: bool
    current_count: int = Field(..., ge=0, description="Period count after the release")


class PeriodReportResponse(BaseModel):
    """Invoice activity in the current billing period."""

    period_start: datetime
    period_end: datetime
    counted_invoices: int = Field(..., ge=0, description="Creations counted against the quota")
    by_status: dict = Field(..., description="Invoices created this period, by status")
