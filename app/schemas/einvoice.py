"""
GST Invoice Admin - E-Invoice Schemas

Pydantic schemas for GST settings and the e-invoice lifecycle endpoints.
Response bodies use camelCase keys (irn, ackNo, ackDate, qrCodeUrl).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.models.gst import LogStatus, TransactionType
from app.utils.error_handling import GSTIN_PATTERN


SECRET_MASK = "********"


class GSTEnvironment(str, Enum):
    """IRP environment."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class CamelModel(BaseModel):
    """Base schema that serializes to camelCase and accepts either spelling."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===========================================
# GST SETTINGS
# ===========================================

class GSTSettings(BaseModel):
    """
    Effective GST configuration, merged from the gst_settings table and
    the process environment.
    """

    # Connection
    api_base_url: str
    client_id: str
    client_secret: str = ""
    api_username: str
    api_password: str = ""
    environment: GSTEnvironment = GSTEnvironment.SANDBOX

    # Operational
    retry_attempts: int = Field(3, ge=0)
    request_timeout: float = Field(30.0, gt=0)
    rate_limit_requests: int = Field(50, gt=0, description="Calls per rolling minute")
    auto_submit_invoices: bool = False
    webhook_url: Optional[str] = None
    custom_headers: Dict[str, str] = Field(default_factory=dict)

    # Company profile (SellerDtls)
    company_gstin: str
    company_legal_name: Optional[str] = None
    company_trade_name: Optional[str] = None
    company_address1: Optional[str] = None
    company_address2: Optional[str] = None
    company_city: Optional[str] = None
    company_state: Optional[str] = None
    company_state_code: Optional[str] = None
    company_pincode: Optional[str] = None
    company_phone: Optional[str] = None
    company_email: Optional[str] = None

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("company_gstin")
    @classmethod
    def validate_gstin(cls, v: str) -> str:
        v = v.strip().upper()
        if not GSTIN_PATTERN.match(v):
            raise ValueError(f"Invalid GSTIN format: {v}")
        return v

    @field_validator("webhook_url")
    @classmethod
    def empty_webhook_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() or None if v else None

    @property
    def credential_fingerprint(self) -> str:
        """Identifies the IRP account a token was issued for."""
        return f"{self.api_base_url}|{self.api_username}|{self.client_id}"


class GSTSettingsUpdate(CamelModel):
    """
    Partial settings update. Fields left out (or None) keep their stored
    value; secrets sent back as the mask are ignored.
    """
    api_base_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    api_username: Optional[str] = None
    api_password: Optional[str] = None
    environment: Optional[GSTEnvironment] = None

    retry_attempts: Optional[int] = None
    request_timeout: Optional[float] = None
    rate_limit_requests: Optional[int] = None
    auto_submit_invoices: Optional[bool] = None
    webhook_url: Optional[str] = None
    custom_headers: Optional[Dict[str, str]] = None

    company_gstin: Optional[str] = None
    company_legal_name: Optional[str] = None
    company_trade_name: Optional[str] = None
    company_address1: Optional[str] = None
    company_address2: Optional[str] = None
    company_city: Optional[str] = None
    company_state: Optional[str] = None
    company_state_code: Optional[str] = None
    company_pincode: Optional[str] = None
    company_phone: Optional[str] = None
    company_email: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "companyGstin": "27AABCU9603R1ZX",
                "apiUsername": "api_user",
                "rateLimitRequests": 50,
                "autoSubmitInvoices": False,
            }
        },
    )


class GSTSettingsRequest(BaseModel):
    """PUT /api/gst/settings body."""
    settings: GSTSettingsUpdate


class GSTSettingRow(CamelModel):
    """One stored settings row as shown on the admin settings page."""
    key: str
    value: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True


class GSTSettingsResponse(CamelModel):
    """Settings view with secrets masked."""
    settings: Dict[str, Any]
    rows: List[GSTSettingRow] = Field(default_factory=list)
    configured: bool
    missing_fields: List[str] = Field(default_factory=list)


class ConnectionTestResponse(CamelModel):
    """Result of POST /api/gst/test-connection."""
    success: bool
    message: str


# ===========================================
# LIFECYCLE OUTCOMES
# ===========================================

class OutcomeError(CamelModel):
    """One code/message pair reported by the IRP or by the core."""
    error_code: str
    error_message: str


class IRNData(CamelModel):
    """IRN fields returned on a successful submission."""
    irn: str
    ack_no: Optional[str] = None
    ack_date: Optional[str] = None
    qr_code_url: Optional[str] = None


class CancellationData(CamelModel):
    cancel_date: Optional[str] = None


class SubmissionOutcome(CamelModel):
    """Structured outcome of submit / retry / reconcile."""
    success: bool
    message: str
    data: Optional[IRNData] = None
    errors: Optional[List[OutcomeError]] = None


class CancellationOutcome(CamelModel):
    """Structured outcome of cancel."""
    success: bool
    message: str
    data: Optional[CancellationData] = None
    errors: Optional[List[OutcomeError]] = None


class CancelInvoiceRequest(BaseModel):
    """POST /api/invoices/{id}/cancel-gst body."""
    reason: Optional[str] = Field(
        None,
        description="duplicate, data_entry_mistake, order_cancelled, other, or IRP code 1-4",
    )
    remarks: Optional[str] = Field(None, max_length=100)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"reason": "duplicate", "remarks": "Raised twice by mistake"}
        }
    )


class ValidationReport(CamelModel):
    """Readiness report for an invoice, computed without calling the IRP."""
    valid: bool
    errors: List[str] = Field(default_factory=list)


# ===========================================
# AUDIT LOG
# ===========================================

class EInvoiceLogResponse(BaseModel):
    """Schema for one audit trail entry. Field names match the e_invoice_logs columns."""
    id: int
    invoice_id: Optional[int] = None
    transaction_type: TransactionType
    status: LogStatus
    api_endpoint: Optional[str] = None
    request_payload: Optional[Any] = None
    response_payload: Optional[Any] = None
    error_code: Optional[str] = None
    error_details: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EInvoiceLogListResponse(BaseModel):
    logs: List[EInvoiceLogResponse]
    total: Optional[int] = None
