"""
GST Invoice Admin - E-Invoice Audit Log Service

Append-only audit trail of IRP calls. One entry per call, written after the
call resolves. Entries are never updated or deleted.
"""

import logging
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.gst import EInvoiceLog, LogStatus, TransactionType

logger = logging.getLogger(__name__)


class EInvoiceLogService:
    """Service for the e_invoice_logs audit trail."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        transaction_type: TransactionType,
        status: LogStatus,
        invoice_id: Optional[int] = None,
        request_payload: Optional[Any] = None,
        response_payload: Optional[Any] = None,
        error_code: Optional[str] = None,
        error_details: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> EInvoiceLog:
        """
        Append one entry.

        With `db`, the entry joins the caller's transaction (the caller
        commits, so the invoice update and its log land together). Without
        it, the entry is committed in its own session.
        """
        entry = EInvoiceLog(
            invoice_id=invoice_id,
            transaction_type=transaction_type,
            status=status,
            request_payload=request_payload,
            response_payload=response_payload,
            error_code=error_code,
            error_details=error_details,
            api_endpoint=api_endpoint,
        )

        if db is not None:
            db.add(entry)
            await db.flush()
        else:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()

        logger.info(
            f"E-invoice log: invoice={invoice_id} type={transaction_type.value} "
            f"status={status.value}" + (f" error={error_code}" if error_code else "")
        )
        return entry

    async def list_for_invoice(self, invoice_id: int) -> List[EInvoiceLog]:
        """Entries for one invoice, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(EInvoiceLog)
                .where(EInvoiceLog.invoice_id == invoice_id)
                .order_by(EInvoiceLog.created_at.asc(), EInvoiceLog.id.asc())
            )
            return list(result.scalars().all())

    async def list_logs(
        self,
        status: Optional[LogStatus] = None,
        transaction_type: Optional[TransactionType] = None,
        invoice_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[EInvoiceLog], int]:
        """Filtered entries across invoices, newest first, with total count."""
        query = select(EInvoiceLog)
        count_query = select(func.count(EInvoiceLog.id))

        if status is not None:
            query = query.where(EInvoiceLog.status == status)
            count_query = count_query.where(EInvoiceLog.status == status)
        if transaction_type is not None:
            query = query.where(EInvoiceLog.transaction_type == transaction_type)
            count_query = count_query.where(EInvoiceLog.transaction_type == transaction_type)
        if invoice_id is not None:
            query = query.where(EInvoiceLog.invoice_id == invoice_id)
            count_query = count_query.where(EInvoiceLog.invoice_id == invoice_id)

        query = (
            query.order_by(EInvoiceLog.created_at.desc(), EInvoiceLog.id.desc())
            .offset(offset)
            .limit(limit)
        )

        async with self.session_factory() as db:
            total = (await db.execute(count_query)).scalar_one()
            result = await db.execute(query)
            return list(result.scalars().all()), total
