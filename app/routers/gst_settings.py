"""
GST Invoice Admin - GST Settings Router

API endpoints for the GST e-invoicing configuration:
- Read settings (secrets masked)
- Update settings (GSTIN validated before anything is stored)
- Test the IRP connection
- Browse the e-invoice audit trail
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.dependencies import (
    get_einvoice_log_service,
    get_einvoice_service,
    get_gst_settings_service,
)
from app.models.gst import LogStatus, TransactionType
from app.schemas.einvoice import (
    ConnectionTestResponse,
    EInvoiceLogListResponse,
    EInvoiceLogResponse,
    GSTSettingsRequest,
    GSTSettingsResponse,
)
from app.services.einvoice_log_service import EInvoiceLogService
from app.services.einvoice_service import EInvoiceService
from app.services.gst_settings_service import GSTSettingsService

router = APIRouter(prefix="/api/gst", tags=["GST Settings"])


@router.get(
    "/settings",
    response_model=GSTSettingsResponse,
    summary="Get GST settings",
)
async def get_settings(
    settings_service: GSTSettingsService = Depends(get_gst_settings_service),
):
    """Effective GST settings with secrets masked."""
    return GSTSettingsResponse(**await settings_service.get_masked())


@router.put(
    "/settings",
    response_model=GSTSettingsResponse,
    summary="Update GST settings",
    description="""
    Partial update. Fields omitted or null keep their stored value and masked
    secrets are ignored. The company GSTIN must match the 15-character GSTIN
    format; an invalid update is rejected and nothing is stored.
    """,
)
async def update_settings(
    request: GSTSettingsRequest,
    settings_service: GSTSettingsService = Depends(get_gst_settings_service),
):
    await settings_service.update(request.settings.model_dump(exclude_unset=True))
    return GSTSettingsResponse(**await settings_service.get_masked())


@router.post(
    "/test-connection",
    response_model=ConnectionTestResponse,
    summary="Test the GST IRP connection",
)
async def test_connection(
    service: EInvoiceService = Depends(get_einvoice_service),
):
    """Authenticate against the IRP with the stored credentials."""
    result = await service.test_connection()
    return ConnectionTestResponse(success=result.success, message=result.message)


@router.get(
    "/logs",
    response_model=EInvoiceLogListResponse,
    summary="Browse the e-invoice audit trail",
)
async def list_logs(
    status: Optional[LogStatus] = Query(None),
    transaction_type: Optional[TransactionType] = Query(None),
    invoice_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    log_service: EInvoiceLogService = Depends(get_einvoice_log_service),
):
    logs, total = await log_service.list_logs(
        status=status,
        transaction_type=transaction_type,
        invoice_id=invoice_id,
        limit=limit,
        offset=offset,
    )
    return EInvoiceLogListResponse(
        logs=[EInvoiceLogResponse.model_validate(log) for log in logs],
        total=total,
    )
