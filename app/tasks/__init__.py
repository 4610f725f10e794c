"""
GST Invoice Admin - Background Tasks Package

Celery background tasks.
"""

from app.tasks.einvoice_tasks import (
    reconcile_einvoices_task,
    reconcile_invoice_task,
    run_async,
)

__all__ = [
    "reconcile_einvoices_task",
    "reconcile_invoice_task",
    "run_async",
]
