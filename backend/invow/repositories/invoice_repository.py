"""
Invoice repository for data access operations.

All lookups are scoped to the owning user. Like every repository here it
flushes but never commits.
"""

from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from invow.models.invoice import Invoice, InvoiceStatus


class InvoiceRepository:
    """Repository for invoice data access."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_for_user(self, invoice_id: str, user_id: str) -> Optional[Invoice]:
        """Get an invoice by ID, only if it belongs to user_id."""
        return self.db.query(Invoice).filter(
            Invoice.id == invoice_id,
            Invoice.user_id == user_id,
        ).first()

    def count_by_status(self, user_id: str, start: datetime, end: datetime) -> Dict[str, int]:
        """Invoice counts per status for invoices created in [start, end)."""
        rows = self.db.query(Invoice.status, func.count(Invoice.id)).filter(
            Invoice.user_id == user_id,
            Invoice.created_at >= start,
            Invoice.created_at < end,
        ).group_by(Invoice.status).all()
        return {status: count for status, count in rows}

    def create(
        self,
        user_id: str,
        invoice_number: str,
        created_at: datetime,
        status: str = InvoiceStatus.DRAFT,
    ) -> Invoice:
        invoice = Invoice(
            user_id=user_id,
            invoice_number=invoice_number,
            status=status,
            created_at=created_at,
            updated_at=created_at,
        )
        self.db.add(invoice)
        self.db.flush()
        return invoice

    def delete(self, invoice: Invoice) -> None:
        self.db.delete(invoice)
        self.db.flush()

    def set_status(self, invoice: Invoice, status: str) -> Invoice:
        invoice.status = status
        self.db.flush()
        return invoice
