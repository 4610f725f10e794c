"""
GST Invoice Admin - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin, utcnow
from app.models.customer import Customer
from app.models.invoice import (
    TaxInvoice,
    InvoiceItem,
    InvoiceStatus,
    FailureKind,
    SUBMITTABLE_STATUSES,
)
from app.models.gst import (
    GSTSetting,
    EInvoiceLog,
    TransactionType,
    LogStatus,
    ImmutableLogError,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    "Customer",
    "TaxInvoice",
    "InvoiceItem",
    "InvoiceStatus",
    "FailureKind",
    "SUBMITTABLE_STATUSES",
    "GSTSetting",
    "EInvoiceLog",
    "TransactionType",
    "LogStatus",
    "ImmutableLogError",
]
