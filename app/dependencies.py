"""
GST Invoice Admin - FastAPI Dependencies

Shared dependencies for the e-invoicing routers.

The EInvoiceService is built once in the application lifespan and kept on
app.state; these helpers hand it (and its collaborators) to endpoints.
"""

from fastapi import Depends, Request

from app.services.einvoice_log_service import EInvoiceLogService
from app.services.einvoice_service import EInvoiceService
from app.services.gst_settings_service import GSTSettingsService


def get_einvoice_service(request: Request) -> EInvoiceService:
    """The process-wide e-invoice orchestrator."""
    return request.app.state.einvoice_service


def get_gst_settings_service(
    service: EInvoiceService = Depends(get_einvoice_service),
) -> GSTSettingsService:
    return service.settings_service


def get_einvoice_log_service(
    service: EInvoiceService = Depends(get_einvoice_service),
) -> EInvoiceLogService:
    return service.log_service
