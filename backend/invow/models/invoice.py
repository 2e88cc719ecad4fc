"""
Invoice model: the quota-consuming resource.

Only the fields the quota engine needs are modelled here: owner, status
and creation time. created_at decides which billing period an invoice
was counted in.
"""

from sqlalchemy import Column, String, Enum, Index, UniqueConstraint

from invow.db_base import Base
from invow.models.base import TimestampMixin, generate_uuid


class InvoiceStatus(str):
    """Invoice status values."""
    DRAFT = "draft"              # Being edited, not yet sent
    PENDING = "pending"          # Issued, awaiting sync
    SYNCED = "synced"            # Synced to storage

    ALL = (DRAFT, PENDING, SYNCED)


class Invoice(Base, TimestampMixin):
    """
    An invoice owned by a user.

    Creating an invoice consumes one slot of the owner's billing-period
    quota. Deleting it releases the slot if it was counted in the current
    period. Status changes never touch the quota.
    """

    __tablename__ = "invoices"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owner of the invoice (from authentication)"
    )

    invoice_number = Column(
        String(100),
        nullable=False,
        comment="Human-facing invoice number, unique per user"
    )

    status = Column(
        Enum(
            *InvoiceStatus.ALL,
            name="invoice_status",
            native_enum=False,
        ),
        nullable=False,
        default=InvoiceStatus.DRAFT,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "invoice_number", name="uq_invoices_user_number"),
        Index("ix_invoices_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, user_id={self.user_id}, status={self.status})>"
