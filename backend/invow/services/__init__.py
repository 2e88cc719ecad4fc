"""
Business logic services.
"""

from invow.services.invoice_service import (
    InvoiceService,
    InvoiceServiceError,
    InvoiceNotFoundError,
    InvalidInvoiceStatusError,
    DuplicateInvoiceNumberError,
)

__all__ = [
    "InvoiceService",
    "InvoiceServiceError",
    "InvoiceNotFoundError",
    "InvalidInvoiceStatusError",
    "DuplicateInvoiceNumberError",
]
