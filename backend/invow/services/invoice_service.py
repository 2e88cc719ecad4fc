"""
Invoice lifecycle service.

Drives the quota engine from invoice lifecycle events:
- create  → request_creation_slot, insert, commit_creation
- delete  → delete, release_creation_slot
- status  → status only, never touches the quota

Every step of a lifecycle event runs in the caller's session, so the
invoice row and the usage counter commit or roll back together.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from invow.entitlements.errors import EntitlementPersistenceError, QuotaExceededError
from invow.entitlements.service import EntitlementService
from invow.models.base import utcnow
from invow.models.invoice import Invoice, InvoiceStatus
from invow.repositories.invoice_repository import InvoiceRepository

logger = logging.getLogger(__name__)


class InvoiceServiceError(Exception):
    """Base exception for invoice service errors."""
    pass


class InvoiceNotFoundError(InvoiceServiceError):
    """Invoice does not exist or belongs to another user."""

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class InvalidInvoiceStatusError(InvoiceServiceError):
    """Requested status is not a known invoice status."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(
            f"Invalid invoice status '{status}'. Expected one of: {', '.join(InvoiceStatus.ALL)}"
        )


class DuplicateInvoiceNumberError(InvoiceServiceError):
    """The user already has an invoice with this number."""

    def __init__(self, invoice_number: str):
        self.invoice_number = invoice_number
        super().__init__(f"Invoice number already in use: {invoice_number}")


class InvoiceService:
    """
    Service for invoice create / delete / status operations.

    Usage:
        service = InvoiceService(db_session)
        invoice = service.create_invoice(user_id, "INV-0001")
        service.update_status(user_id, invoice.id, InvoiceStatus.PENDING)
        service.delete_invoice(user_id, invoice.id)
    """

    def __init__(
        self,
        db_session: Session,
        entitlements: Optional[EntitlementService] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self._now = now or utcnow
        self.entitlements = entitlements or EntitlementService(db_session, now=self._now)
        self._repo = InvoiceRepository(db_session)

    def create_invoice(self, user_id: str, invoice_number: str) -> Invoice:
        """
        Create an invoice, consuming one quota slot.

        The subscription row is made to exist before the slot check, so the
        billing period is already open when the invoice is stamped and its
        created_at always falls inside the period it is counted in.

        Raises:
            QuotaExceededError: If the user's quota for this period is used up
            DuplicateInvoiceNumberError: If the user already has this number
        """
        self.entitlements.ensure_subscription(user_id)

        slot = self.entitlements.request_creation_slot(user_id)
        if not slot.allowed:
            usage = self.entitlements.get_usage_summary(user_id)
            raise QuotaExceededError(
                user_id, usage.limit, usage.current_count, slot.effective_tier.value,
            )

        try:
            invoice = self._repo.create(user_id, invoice_number, created_at=self._now())
        except IntegrityError as exc:
            logger.warning(
                "Duplicate invoice number rejected",
                extra={"user_id": user_id, "invoice_number": invoice_number}
            )
            raise DuplicateInvoiceNumberError(invoice_number) from exc
        except SQLAlchemyError as exc:
            logger.error(
                "Invoice insert failed",
                extra={"user_id": user_id, "error": str(exc)}
            )
            raise EntitlementPersistenceError(user_id, "create_invoice", cause=exc) from exc

        count = self.entitlements.commit_creation(user_id)

        logger.info(
            "Invoice created",
            extra={
                "user_id": user_id,
                "invoice_id": invoice.id,
                "tier": slot.effective_tier.value,
                "period_count": count,
            }
        )
        return invoice

    def delete_invoice(self, user_id: str, invoice_id: str) -> int:
        """
        Delete an invoice and release its quota slot.

        Returns:
            The user's period count after the release

        Raises:
            InvoiceNotFoundError: If the invoice is not the user's
        """
        invoice = self._get_owned(user_id, invoice_id)
        created_at = invoice.created_at

        try:
            self._repo.delete(invoice)
        except SQLAlchemyError as exc:
            logger.error(
                "Invoice delete failed",
                extra={"user_id": user_id, "invoice_id": invoice_id, "error": str(exc)}
            )
            raise EntitlementPersistenceError(user_id, "delete_invoice", cause=exc) from exc

        count = self.entitlements.release_creation_slot(user_id, created_at)

        logger.info(
            "Invoice deleted",
            extra={"user_id": user_id, "invoice_id": invoice_id, "period_count": count}
        )
        return count

    def update_status(self, user_id: str, invoice_id: str, status: str) -> Invoice:
        """
        Change an invoice's status.

        Status changes are not creations or deletions: the quota engine is
        never consulted.

        Raises:
            InvalidInvoiceStatusError: If status is unknown
            InvoiceNotFoundError: If the invoice is not the user's
        """
        if status not in InvoiceStatus.ALL:
            raise InvalidInvoiceStatusError(status)

        invoice = self._get_owned(user_id, invoice_id)
        previous = invoice.status
        self._repo.set_status(invoice, status)

        logger.info(
            "Invoice status changed",
            extra={
                "user_id": user_id,
                "invoice_id": invoice_id,
                "old_status": previous,
                "new_status": status,
            }
        )
        return invoice

    def period_report(self, user_id: str) -> Dict[str, Any]:
        """
        Invoice activity for the user's current billing period.

        Premium-only in the API; the gate lives in the route dependency.
        """
        usage = self.entitlements.get_usage_summary(user_id)
        by_status = self._repo.count_by_status(user_id, usage.cycle_start, usage.cycle_end)
        return {
            "period_start": usage.cycle_start,
            "period_end": usage.cycle_end,
            "counted_invoices": usage.current_count,
            "by_status": {status: by_status.get(status, 0) for status in InvoiceStatus.ALL},
        }

    def _get_owned(self, user_id: str, invoice_id: str) -> Invoice:
        invoice = self._repo.get_for_user(invoice_id, user_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice
