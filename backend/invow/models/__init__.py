"""
Database models for subscriptions and quota-consuming invoices.
"""

from invow.models.base import TimestampMixin, UTCDateTime
from invow.models.subscription import UserSubscription
from invow.models.invoice import Invoice, InvoiceStatus

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "UserSubscription",
    "Invoice",
    "InvoiceStatus",
]
