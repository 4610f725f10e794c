"""
GST Invoice Admin - E-Invoice Celery Tasks

Background reconciliation of the e-invoice lifecycle:
- invoices stuck in submitting/cancelling past the staleness window
- transient submission failures whose backoff delay has elapsed
- validated invoices when auto-submit is enabled
"""

import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from app.database import close_db

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@shared_task(name='app.tasks.einvoice_tasks.reconcile_einvoices_task')
def reconcile_einvoices_task() -> Dict[str, Any]:
    """Periodic e-invoice reconciliation sweep."""
    return run_async(_reconcile_einvoices())


async def _reconcile_einvoices(service=None) -> Dict[str, Any]:
    """Async implementation of the reconciliation sweep."""
    from app.services.einvoice_service import build_einvoice_service

    owned = service is None
    service = service or build_einvoice_service()
    try:
        stats = await service.run_reconciliation_sweep()
    finally:
        if owned:
            await service.aclose()
            # pooled connections belong to this task's event loop
            await close_db()

    logger.info(
        f"E-invoice sweep complete: {stats.get('succeeded', 0)} succeeded, "
        f"{stats.get('failed', 0)} failed, {stats.get('errors', 0)} errors"
    )
    return stats


@shared_task(name='app.tasks.einvoice_tasks.reconcile_invoice_task')
def reconcile_invoice_task(invoice_id: int) -> Dict[str, Any]:
    """Reconcile a single invoice on demand."""
    return run_async(_reconcile_invoice(invoice_id))


async def _reconcile_invoice(invoice_id: int, service=None) -> Dict[str, Any]:
    from app.services.einvoice_service import build_einvoice_service

    owned = service is None
    service = service or build_einvoice_service()
    try:
        outcome = await service.reconcile(invoice_id)
    finally:
        if owned:
            await service.aclose()
            await close_db()

    logger.info(f"Invoice {invoice_id} reconciled: {outcome.message}")
    return outcome.model_dump(mode="json", by_alias=True, exclude_none=True)
