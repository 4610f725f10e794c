"""
GST Invoice Admin - Routers Package

FastAPI route handlers.

Routers:
- einvoice: IRN submission, retry, cancellation, reconciliation and audit trail per invoice
- gst_settings: GST configuration, connection test and audit trail browsing
"""

from app.routers import (
    einvoice,
    gst_settings,
)

__all__ = [
    "einvoice",
    "gst_settings",
]
