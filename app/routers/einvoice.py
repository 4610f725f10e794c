"""
GST Invoice Admin - Invoice E-Invoicing Router

API endpoints for the GST e-invoice lifecycle of a tax invoice:
- IRN generation (submit) and user-triggered retry
- IRN cancellation
- Audit trail per invoice
- Reconciliation of submissions with an unknown outcome
- Readiness validation

GST e-invoicing rules:
- An invoice gets at most one IRN; a second submit is refused with 409
- Only submitted invoices can be cancelled
- Remote rejections are returned as {success: false, errors} with HTTP 400
"""

from fastapi import APIRouter, Depends, Path, status
from fastapi.responses import JSONResponse

from app.dependencies import get_einvoice_service
from app.schemas.einvoice import (
    CancelInvoiceRequest,
    CancellationOutcome,
    EInvoiceLogListResponse,
    EInvoiceLogResponse,
    SubmissionOutcome,
    ValidationReport,
)
from app.services.einvoice_service import EInvoiceService

router = APIRouter(prefix="/api/invoices", tags=["GST E-Invoicing"])


def _respond(outcome):
    """Successful outcomes go out as 200, failures as 400 with the same shape."""
    if outcome.success:
        return outcome
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=outcome.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@router.post(
    "/{invoice_id}/submit-gst",
    response_model=SubmissionOutcome,
    response_model_exclude_none=True,
    summary="Submit invoice to the GST IRP for IRN",
    description="""
    Submit a persisted tax invoice to the GST Invoice Registration Portal.

    **Preconditions:** status draft, validated or submission_failed, and no IRN.

    **Returns:** IRN, acknowledgement number/date and signed QR code URL.

    **Conflicts:** 409 ALREADY_SUBMITTED when the invoice already has an IRN,
    409 SUBMISSION_IN_PROGRESS while another request is submitting it.
    """,
)
async def submit_invoice(
    invoice_id: int = Path(..., gt=0),
    service: EInvoiceService = Depends(get_einvoice_service),
):
    """Submit invoice for IRN generation."""
    return _respond(await service.submit(invoice_id))


@router.post(
    "/{invoice_id}/retry-gst",
    response_model=SubmissionOutcome,
    response_model_exclude_none=True,
    summary="Retry a failed GST submission",
    description="""
    Retry an invoice in submission_failed. After a timeout or network error
    the IRP is asked first whether it already issued an IRN for the document;
    if so that IRN is recorded and nothing is resubmitted.
    """,
)
async def retry_invoice(
    invoice_id: int = Path(..., gt=0),
    service: EInvoiceService = Depends(get_einvoice_service),
):
    """Retry IRN generation."""
    return _respond(await service.retry(invoice_id))


@router.post(
    "/{invoice_id}/cancel-gst",
    response_model=CancellationOutcome,
    response_model_exclude_none=True,
    summary="Cancel the invoice IRN",
    description="""
    Cancel the IRN of a submitted invoice.

    **Reasons:** duplicate, data_entry_mistake, order_cancelled, other
    (or the IRP codes 1-4).

    The IRP refuses cancellation once its time limit has passed; the invoice
    then stays submitted and the refusal is returned as errors.
    """,
)
async def cancel_invoice(
    request: CancelInvoiceRequest,
    invoice_id: int = Path(..., gt=0),
    service: EInvoiceService = Depends(get_einvoice_service),
):
    """Cancel IRN."""
    return _respond(await service.cancel(invoice_id, request.reason, request.remarks))


@router.get(
    "/{invoice_id}/logs",
    response_model=EInvoiceLogListResponse,
    summary="E-invoice audit trail for an invoice",
)
async def get_invoice_logs(
    invoice_id: int = Path(..., gt=0),
    service: EInvoiceService = Depends(get_einvoice_service),
):
    """Chronological list of IRP calls made for this invoice."""
    logs = await service.get_logs(invoice_id)
    return EInvoiceLogListResponse(
        logs=[EInvoiceLogResponse.model_validate(log) for log in logs],
        total=len(logs),
    )


@router.post(
    "/{invoice_id}/reconcile-gst",
    response_model=SubmissionOutcome,
    response_model_exclude_none=True,
    summary="Reconcile an invoice with the IRP",
    description="""
    Settle a submission whose outcome is unknown (stuck in submitting, or
    failed with a timeout). Looks the document up on the IRP and records
    the IRN if one exists.
    """,
)
async def reconcile_invoice(
    invoice_id: int = Path(..., gt=0),
    service: EInvoiceService = Depends(get_einvoice_service),
):
    return _respond(await service.reconcile(invoice_id))


@router.post(
    "/validate/{invoice_id}",
    response_model=ValidationReport,
    summary="Check e-invoice readiness",
    description="Report missing data (buyer GSTIN, items, HSN codes) without calling the IRP.",
)
async def validate_invoice(
    invoice_id: int = Path(..., gt=0),
    service: EInvoiceService = Depends(get_einvoice_service),
):
    return await service.validate_invoice(invoice_id)
