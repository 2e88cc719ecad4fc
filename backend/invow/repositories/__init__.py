"""Repository layer for subscriptions and invoices."""

from invow.repositories.subscription_repository import UserSubscriptionRepository
from invow.repositories.invoice_repository import InvoiceRepository

__all__ = [
    "UserSubscriptionRepository",
    "InvoiceRepository",
]
