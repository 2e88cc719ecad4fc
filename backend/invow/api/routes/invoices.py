"""
Invoice API routes.

Creation consumes quota, deletion releases it, status changes never touch
it. All routes require an authenticated user (request.state.user_id).
"""

from fastapi import APIRouter, Depends, HTTPException, status

from invow.api.dependencies.entitlements import (
    get_current_user_id,
    get_invoice_service,
    raise_http_for,
    require_monthly_report,
)
from invow.api.schemas.entitlements import (
    CreateInvoiceRequest,
    DeleteInvoiceResponse,
    InvoiceResponse,
    PeriodReportResponse,
    UpdateInvoiceStatusRequest,
)
from invow.entitlements.errors import EntitlementError
from invow.services.invoice_service import (
    DuplicateInvoiceNumberError,
    InvalidInvoiceStatusError,
    InvoiceNotFoundError,
    InvoiceService,
)


router = APIRouter(prefix="/api/invoices", tags=["invoices"])


@router.post("", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
def create_invoice(
    request: CreateInvoiceRequest,
    user_id: str = Depends(get_current_user_id),
    service: InvoiceService = Depends(get_invoice_service),
):
    """
    Create an invoice.

    Returns 402 when the period quota is used up and 409 when the number
    is already taken.
    """
    try:
        invoice = service.create_invoice(user_id, request.invoice_number)
    except DuplicateInvoiceNumberError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except EntitlementError as e:
        raise_http_for(e)
    return InvoiceResponse.model_validate(invoice)


@router.get("/report", response_model=PeriodReportResponse)
def get_period_report(
    user_id: str = Depends(require_monthly_report),
    service: InvoiceService = Depends(get_invoice_service),
):
    """Invoice activity for the current billing period (Premium only)."""
    try:
        report = service.period_report(user_id)
    except EntitlementError as e:
        raise_http_for(e)
    return PeriodReportResponse(**report)


@router.delete("/{invoice_id}", response_model=DeleteInvoiceResponse)
def delete_invoice(
    invoice_id: str,
    user_id: str = Depends(get_current_user_id),
    service: InvoiceService = Depends(get_invoice_service),
):
    """Delete an invoice and release its quota slot."""
    try:
        count = service.delete_invoice(user_id, invoice_id)
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except EntitlementError as e:
        raise_http_for(e)
    return DeleteInvoiceResponse(deleted=True, current_count=count)


@router.patch("/{invoice_id}/status", response_model=InvoiceResponse)
def update_invoice_status(
    invoice_id: str,
    request: UpdateInvoiceStatusRequest,
    user_id: str = Depends(get_current_user_id),
    service: InvoiceService = Depends(get_invoice_service),
):
    """Change an invoice's status. Never affects quota usage."""
    try:
        invoice = service.update_status(user_id, invoice_id, request.status)
    except InvalidInvoiceStatusError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return InvoiceResponse.model_validate(invoice)
