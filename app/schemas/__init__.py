"""
GST Invoice Admin - Schemas Package

Pydantic schemas for request/response validation.
"""

from app.schemas.einvoice import (
    GSTEnvironment,
    GSTSettings,
    GSTSettingsUpdate,
    GSTSettingsRequest,
    GSTSettingsResponse,
    ConnectionTestResponse,
    OutcomeError,
    IRNData,
    CancellationData,
    SubmissionOutcome,
    CancellationOutcome,
    CancelInvoiceRequest,
    ValidationReport,
    EInvoiceLogResponse,
    EInvoiceLogListResponse,
)

__all__ = [
    "GSTEnvironment",
    "GSTSettings",
    "GSTSettingsUpdate",
    "GSTSettingsRequest",
    "GSTSettingsResponse",
    "ConnectionTestResponse",
    "OutcomeError",
    "IRNData",
    "CancellationData",
    "SubmissionOutcome",
    "CancellationOutcome",
    "CancelInvoiceRequest",
    "ValidationReport",
    "EInvoiceLogResponse",
    "EInvoiceLogListResponse",
]
