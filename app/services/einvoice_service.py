"""
GST Invoice Admin - E-Invoice Lifecycle Service

Drives the e-invoice state machine for tax invoices:

    draft -> validated -> submitting -> submitted | submission_failed
    submitted -> cancelling -> cancelled

Guarantees:
- At most one IRN per invoice, ever. An invoice that already carries an IRN
  is never sent to the IRP again.
- Mutating operations on one invoice are serialized by an in-process lock
  and by a compare-and-swap on the status column (covers other workers).
- The IRP call and the write-back run in a shielded task; a client
  disconnect does not abandon a submission half way.
- The invoice update and its audit entry are committed together.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

import httpx
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings as app_settings
from app.database import async_session_factory
from app.models.base import utcnow
from app.models.gst import EInvoiceLog, LogStatus, TransactionType
from app.models.invoice import SUBMITTABLE_STATUSES, FailureKind, InvoiceStatus, TaxInvoice
from app.schemas.einvoice import (
    CancellationData,
    CancellationOutcome,
    GSTSettings,
    IRNData,
    OutcomeError,
    SubmissionOutcome,
    ValidationReport,
)
from app.services.einvoice_client import (
    ConnectionResult,
    EInvoiceApiClient,
    IRNLookupResult,
    SubmissionResult,
    format_errors,
)
from app.services.einvoice_log_service import EInvoiceLogService
from app.services.einvoice_payload import build_payload, readiness_errors
from app.services.gst_settings_service import GSTSettingsService
from app.services.gst_token_manager import GSTTokenManager
from app.services.rate_limiter import RateLimiter, build_rate_limiter
from app.services.retry_policy import RetryPolicy, classify_failure
from app.utils.error_handling import (
    AlreadySubmittedException,
    AppException,
    CancellationWindowExpiredException,
    ConfigurationException,
    ExternalServiceException,
    InvalidStateException,
    InvoiceNotFoundException,
    InvoiceNotReadyException,
    RateLimitException,
    SubmissionInProgressException,
    ValidationException,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Webhook notice queued inside the invoice lock: (event, invoice_id, invoice_no, data)
Notice = Tuple[str, int, str, Dict[str, Any]]

# Failures caught and turned into a structured outcome
REMOTE_FAILURES = (ExternalServiceException, CancellationWindowExpiredException)


def _outcome_errors(exc: BaseException) -> List[OutcomeError]:
    details = getattr(exc, "error_details", None) or []
    if details:
        return [
            OutcomeError(error_code=str(d.get("error_code", "")), error_message=str(d.get("error_message", "")))
            for d in details
        ]
    if isinstance(exc, AppException):
        return [OutcomeError(error_code=exc.code.value, error_message=exc.message)]
    return [OutcomeError(error_code="SYSTEM_ERROR", error_message=str(exc) or type(exc).__name__)]


def _error_code(exc: BaseException) -> str:
    errors = _outcome_errors(exc)
    return errors[0].error_code if errors else "SYSTEM_ERROR"


def _irn_values(result: Any) -> Dict[str, Any]:
    """Invoice columns set from a SubmissionResult or IRNLookupResult."""
    return {
        "irn": result.irn,
        "ack_no": result.ack_no,
        "ack_date": result.ack_date,
        "qr_code_url": result.qr_code_url,
        "signed_invoice": result.signed_invoice,
        "signed_qr_code": result.signed_qr_code,
        "status": InvoiceStatus.SUBMITTED,
        "error_code": None,
        "error_message": None,
        "failure_kind": None,
    }


def _irn_data(result: Any) -> IRNData:
    return IRNData(
        irn=result.irn,
        ack_no=result.ack_no,
        ack_date=result.ack_date,
        qr_code_url=result.qr_code_url,
    )


class EInvoiceService:
    """
    E-invoice lifecycle orchestrator.

    One instance per process, built at the composition root. Holds no
    invoice state of its own; the database is the source of truth.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        settings_service: GSTSettingsService,
        client: EInvoiceApiClient,
        log_service: EInvoiceLogService,
        retry_policy: Optional[RetryPolicy] = None,
        stale_after_seconds: Optional[int] = None,
        sweep_batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.settings_service = settings_service
        self.client = client
        self.log_service = log_service
        self.retry_policy = retry_policy or RetryPolicy()
        self.stale_after = timedelta(
            seconds=stale_after_seconds if stale_after_seconds is not None
            else app_settings.gst_submission_stale_after_seconds
        )
        self.sweep_batch_size = sweep_batch_size or app_settings.gst_sweep_batch_size
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._inflight: Set[asyncio.Task] = set()

    # ===========================================
    # CONCURRENCY
    # ===========================================

    def _lock_for(self, invoice_id: int) -> asyncio.Lock:
        lock = self._locks.get(invoice_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[invoice_id] = lock
        return lock

    async def _shielded(self, coro: Awaitable[T]) -> T:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _exclusive(
        self,
        invoice_id: int,
        gst: GSTSettings,
        operation: Callable[[List[Notice]], Awaitable[T]],
    ) -> T:
        """
        Run `operation` under the invoice lock in a task the caller cannot
        cancel. Webhook notices it queues are sent once the lock is released.
        """
        lock = self._lock_for(invoice_id)
        notices: List[Notice] = []

        async def run() -> T:
            async with lock:
                return await operation(notices)

        result = await self._shielded(run())
        if notices:
            await self._shielded(self._send_notices(gst, notices))
        return result

    async def _claim(
        self,
        db: AsyncSession,
        invoice_id: int,
        expected: InvoiceStatus,
        target: InvoiceStatus,
        irn_present: bool = False,
        extra: Optional[Dict[str, Any]] = None,
        touch_attempt: bool = True,
    ) -> bool:
        """Compare-and-swap the invoice status. True if this caller won."""
        irn_clause = TaxInvoice.irn.is_not(None) if irn_present else TaxInvoice.irn.is_(None)
        now = self._clock()
        values: Dict[str, Any] = {"status": target, "updated_at": now}
        if touch_attempt:
            values["last_attempt_at"] = now
        if extra:
            values.update(extra)

        result = await db.execute(
            update(TaxInvoice)
            .where(TaxInvoice.id == invoice_id)
            .where(TaxInvoice.status == expected)
            .where(irn_clause)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        won = result.rowcount == 1
        if won:
            logger.info(f"Invoice {invoice_id}: {expected.value} -> {target.value}")
        else:
            logger.warning(f"Invoice {invoice_id}: lost {expected.value} -> {target.value} claim")
        return won

    async def _raise_claim_lost(self, invoice_id: int) -> None:
        async with self.session_factory() as db:
            invoice = await db.get(TaxInvoice, invoice_id)
        if invoice is not None and invoice.irn:
            raise AlreadySubmittedException(invoice_id, invoice.irn)
        raise SubmissionInProgressException(invoice_id)

    async def _release(
        self,
        invoice_id: int,
        claimed: InvoiceStatus,
        back_to: InvoiceStatus,
        restore: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Undo a claim without recording anything (nothing reached the IRP).
        `restore` puts back columns the claim changed besides the status.
        """
        values: Dict[str, Any] = {"status": back_to, "updated_at": self._clock()}
        if restore:
            values.update(restore)
        async with self.session_factory() as db:
            await db.execute(
                update(TaxInvoice)
                .where(TaxInvoice.id == invoice_id)
                .where(TaxInvoice.status == claimed)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.info(f"Invoice {invoice_id}: claim released, back to {back_to.value}")

    async def _commit_transition(
        self,
        invoice_id: int,
        values: Dict[str, Any],
        log: Dict[str, Any],
    ) -> None:
        """Apply invoice column changes and append the audit entry in one transaction."""
        async with self.session_factory() as db:
            invoice = await db.get(TaxInvoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundException(invoice_id)

            new_irn = values.get("irn")
            if new_irn and invoice.irn and invoice.irn != new_irn:
                logger.critical(
                    f"Invoice {invoice_id} already carries IRN {invoice.irn}, refusing to overwrite with {new_irn}"
                )
                raise AlreadySubmittedException(invoice_id, invoice.irn)

            for key, value in values.items():
                setattr(invoice, key, value)
            invoice.updated_at = self._clock()

            await self.log_service.record(invoice_id=invoice_id, db=db, **log)
            try:
                await db.commit()
            except SQLAlchemyError:
                if new_irn:
                    # Left in SUBMITTING; reconciliation will adopt the IRN
                    logger.critical(f"Invoice {invoice_id}: IRN {new_irn} issued but not saved", exc_info=True)
                raise

    async def _load_invoice(self, db: AsyncSession, invoice_id: int) -> TaxInvoice:
        result = await db.execute(
            select(TaxInvoice)
            .where(TaxInvoice.id == invoice_id)
            .options(selectinload(TaxInvoice.customer), selectinload(TaxInvoice.items))
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id)
        return invoice

    # ===========================================
    # SUBMIT / RETRY
    # ===========================================

    async def submit(self, invoice_id: int) -> SubmissionOutcome:
        """
        Submit an invoice to the IRP for IRN generation.

        Raises:
            InvoiceNotFoundException
            AlreadySubmittedException: the invoice already has an IRN
            SubmissionInProgressException: another request holds the claim
            InvalidStateException: status does not allow submission
            InvoiceNotReadyException: invoice data incomplete
            ConfigurationException: GST settings incomplete
            RateLimitException: no IRP slot within the wait ceiling
        """
        gst = await self.settings_service.get()
        return await self._exclusive(
            invoice_id, gst,
            lambda notices: self._submit(invoice_id, gst, TransactionType.SUBMIT, notices),
        )

    async def retry(self, invoice_id: int, automatic: bool = False) -> SubmissionOutcome:
        """
        Retry a failed submission.

        Only invoices in submission_failed without an IRN qualify. Otherwise
        identical to submit.
        """
        gst = await self.settings_service.get()
        return await self._exclusive(
            invoice_id, gst,
            lambda notices: self._submit(
                invoice_id, gst, TransactionType.RETRY, notices, automatic=automatic
            ),
        )

    def _check_submittable(self, invoice: TaxInvoice, transaction_type: TransactionType) -> None:
        if invoice.irn or invoice.status in (
            InvoiceStatus.SUBMITTED, InvoiceStatus.CANCELLING, InvoiceStatus.CANCELLED
        ):
            logger.info(f"Invoice {invoice.id}: already submitted (IRN {invoice.irn}), not calling IRP")
            raise AlreadySubmittedException(invoice.id, invoice.irn)

        if invoice.status == InvoiceStatus.SUBMITTING:
            raise SubmissionInProgressException(invoice.id)

        if transaction_type == TransactionType.RETRY:
            if invoice.status != InvoiceStatus.SUBMISSION_FAILED:
                raise InvalidStateException(
                    invoice.id, invoice.status.value, "retry",
                    allowed=[InvoiceStatus.SUBMISSION_FAILED.value],
                )
        elif invoice.status not in SUBMITTABLE_STATUSES:
            raise InvalidStateException(
                invoice.id, invoice.status.value, "submit",
                allowed=[s.value for s in SUBMITTABLE_STATUSES],
            )

    async def _submit(
        self,
        invoice_id: int,
        gst: GSTSettings,
        transaction_type: TransactionType,
        notices: List[Notice],
        automatic: bool = False,
    ) -> SubmissionOutcome:
        """
        Claim, then send the document.

        After a transient failure, whichever operation comes next, the IRP is
        first asked whether it already issued an IRN for the document, and a
        found IRN is adopted instead of resubmitting. A duplicate-IRN
        rejection (2150) triggers the same lookup.
        """
        async with self.session_factory() as db:
            invoice = await self._load_invoice(db, invoice_id)
            self._check_submittable(invoice, transaction_type)

            errors = readiness_errors(invoice)
            if errors:
                raise InvoiceNotReadyException(invoice_id, errors)

            payload = build_payload(invoice, gst)
            prior_status = invoice.status
            prior_failure = invoice.failure_kind
            prior_retry_count = invoice.auto_retry_count
            doc_no, doc_date = invoice.invoice_no, invoice.invoice_date

            extra: Dict[str, Any] = {}
            if automatic:
                extra["auto_retry_count"] = TaxInvoice.auto_retry_count + 1
            elif transaction_type == TransactionType.RETRY:
                extra["auto_retry_count"] = 0

            if not await self._claim(db, invoice_id, prior_status, InvoiceStatus.SUBMITTING, extra=extra):
                await self._raise_claim_lost(invoice_id)

        endpoint = EInvoiceApiClient.ENDPOINTS["generate"]
        try:
            if prior_failure == FailureKind.TRANSIENT:
                lookup = await self.client.get_irn_by_document(gst, doc_no, doc_date)
                if lookup.found:
                    return await self._adopt_remote_irn(invoice_id, lookup, doc_no, notices)

            result = await self.client.submit(gst, payload)
        except RateLimitException:
            await self._release(
                invoice_id, InvoiceStatus.SUBMITTING, prior_status,
                restore={"auto_retry_count": prior_retry_count},
            )
            raise
        except REMOTE_FAILURES as e:
            return await self._record_submit_failure(invoice_id, transaction_type, payload, e, endpoint)
        except Exception as e:
            logger.exception(f"Invoice {invoice_id}: unexpected error during IRP submission")
            await self._record_submit_failure(invoice_id, transaction_type, payload, e, endpoint)
            raise

        if result.success:
            await self._commit_transition(
                invoice_id,
                _irn_values(result),
                {
                    "transaction_type": transaction_type,
                    "status": LogStatus.SUCCESS,
                    "request_payload": payload,
                    "response_payload": result.raw_response,
                    "api_endpoint": endpoint,
                },
            )
            logger.info(f"Invoice {invoice_id} submitted, IRN {result.irn}")
            notices.append(("irn.generated", invoice_id, doc_no, _irn_data(result).model_dump()))
            return SubmissionOutcome(
                success=True,
                message="Invoice submitted to GST successfully",
                data=_irn_data(result),
            )

        if result.duplicate:
            logger.warning(f"Invoice {invoice_id}: IRP reports a duplicate IRN, looking it up")
            try:
                lookup = await self.client.get_irn_by_document(gst, doc_no, doc_date)
            except (RateLimitException,) + REMOTE_FAILURES as e:
                # The next duplicate rejection looks again
                return await self._record_submit_failure(invoice_id, transaction_type, payload, e, endpoint)
            if lookup.found:
                return await self._adopt_remote_irn(invoice_id, lookup, doc_no, notices)

        return await self._record_rejection(invoice_id, transaction_type, payload, result, endpoint)

    async def _record_rejection(
        self,
        invoice_id: int,
        transaction_type: TransactionType,
        payload: Dict[str, Any],
        result: SubmissionResult,
        endpoint: str,
    ) -> SubmissionOutcome:
        """IRP answered with Status != 1: the document itself was refused."""
        message = format_errors(result.error_details) or "Unknown GST error"
        error_code = result.error_details[0].error_code if result.error_details else "GST_ERROR"

        await self._commit_transition(
            invoice_id,
            {
                "status": InvoiceStatus.SUBMISSION_FAILED,
                "error_code": error_code,
                "error_message": message,
                "failure_kind": FailureKind.PERMANENT,
            },
            {
                "transaction_type": transaction_type,
                "status": LogStatus.FAILURE,
                "request_payload": payload,
                "response_payload": result.raw_response,
                "error_code": error_code,
                "error_details": message,
                "api_endpoint": endpoint,
            },
        )
        logger.warning(f"Invoice {invoice_id} rejected by IRP: {message}")
        return SubmissionOutcome(
            success=False,
            message="GST submission failed",
            errors=[
                OutcomeError(error_code=e.error_code, error_message=e.error_message)
                for e in result.error_details
            ] or [OutcomeError(error_code=error_code, error_message=message)],
        )

    async def _record_submit_failure(
        self,
        invoice_id: int,
        transaction_type: TransactionType,
        payload: Optional[Dict[str, Any]],
        exc: BaseException,
        endpoint: str,
    ) -> SubmissionOutcome:
        kind = classify_failure(exc)
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        error_code = _error_code(exc)

        await self._commit_transition(
            invoice_id,
            {
                "status": InvoiceStatus.SUBMISSION_FAILED,
                "error_code": error_code,
                "error_message": message,
                "failure_kind": kind,
            },
            {
                "transaction_type": transaction_type,
                "status": LogStatus.FAILURE,
                "request_payload": payload,
                "response_payload": {"error": message},
                "error_code": error_code,
                "error_details": message,
                "api_endpoint": endpoint,
            },
        )
        logger.warning(f"Invoice {invoice_id} submission failed ({kind.value}): {message}")
        return SubmissionOutcome(success=False, message="GST submission failed", errors=_outcome_errors(exc))

    async def _adopt_remote_irn(
        self,
        invoice_id: int,
        lookup: IRNLookupResult,
        doc_no: str,
        notices: List[Notice],
    ) -> SubmissionOutcome:
        await self._commit_transition(
            invoice_id,
            _irn_values(lookup),
            {
                "transaction_type": TransactionType.RECONCILE,
                "status": LogStatus.SUCCESS,
                "request_payload": {"docnum": doc_no},
                "response_payload": lookup.raw_response,
                "api_endpoint": EInvoiceApiClient.ENDPOINTS["irn_by_doc"],
            },
        )
        logger.info(f"Invoice {invoice_id}: adopted IRN {lookup.irn} already registered on the IRP")
        notices.append(("irn.generated", invoice_id, doc_no, _irn_data(lookup).model_dump()))
        return SubmissionOutcome(
            success=True,
            message="IRN already registered on the IRP, recovered without resubmitting",
            data=_irn_data(lookup),
        )

    # ===========================================
    # CANCEL
    # ===========================================

    async def cancel(
        self,
        invoice_id: int,
        reason: Optional[str],
        remarks: Optional[str] = None,
    ) -> CancellationOutcome:
        """
        Cancel a submitted invoice's IRN.

        The cancellation window is enforced by the IRP; a refusal leaves the
        invoice submitted and is returned as a failure outcome.
        """
        if not reason or not reason.strip():
            raise ValidationException("Cancellation reason is required", field="reason")

        gst = await self.settings_service.get()
        return await self._exclusive(
            invoice_id, gst,
            lambda notices: self._cancel(invoice_id, gst, reason.strip(), remarks, notices),
        )

    async def _cancel(
        self,
        invoice_id: int,
        gst: GSTSettings,
        reason: str,
        remarks: Optional[str],
        notices: List[Notice],
    ) -> CancellationOutcome:
        async with self.session_factory() as db:
            invoice = await db.get(TaxInvoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundException(invoice_id)
            if invoice.status != InvoiceStatus.SUBMITTED or not invoice.irn:
                raise InvalidStateException(
                    invoice_id, invoice.status.value, "cancel",
                    allowed=[InvoiceStatus.SUBMITTED.value],
                )
            irn, doc_no = invoice.irn, invoice.invoice_no

            if not await self._claim(
                db, invoice_id, InvoiceStatus.SUBMITTED, InvoiceStatus.CANCELLING, irn_present=True
            ):
                raise InvalidStateException(invoice_id, InvoiceStatus.CANCELLING.value, "cancel")

        payload = EInvoiceApiClient.build_cancel_payload(irn, reason, remarks)
        endpoint = EInvoiceApiClient.ENDPOINTS["cancel"]

        try:
            result = await self.client.cancel(gst, irn, reason, remarks)
        except RateLimitException:
            await self._release(invoice_id, InvoiceStatus.CANCELLING, InvoiceStatus.SUBMITTED)
            raise
        except REMOTE_FAILURES as e:
            return await self._record_cancel_failure(invoice_id, payload, e, endpoint)
        except Exception as e:
            logger.exception(f"Invoice {invoice_id}: unexpected error during IRP cancellation")
            await self._record_cancel_failure(invoice_id, payload, e, endpoint)
            raise

        if not result.success:
            message = format_errors(result.error_details) or "Invoice cancellation failed"
            error_code = result.error_details[0].error_code if result.error_details else "GST_ERROR"
            await self._commit_transition(
                invoice_id,
                {"status": InvoiceStatus.SUBMITTED},
                {
                    "transaction_type": TransactionType.CANCEL,
                    "status": LogStatus.FAILURE,
                    "request_payload": payload,
                    "response_payload": result.raw_response,
                    "error_code": error_code,
                    "error_details": message,
                    "api_endpoint": endpoint,
                },
            )
            return CancellationOutcome(
                success=False,
                message="Invoice cancellation failed",
                errors=[
                    OutcomeError(error_code=e.error_code, error_message=e.error_message)
                    for e in result.error_details
                ] or [OutcomeError(error_code=error_code, error_message=message)],
            )

        cancel_date = result.cancel_date or self._clock().strftime("%Y-%m-%d %H:%M:%S")
        await self._commit_transition(
            invoice_id,
            {
                "status": InvoiceStatus.CANCELLED,
                "cancel_date": cancel_date,
                "cancel_reason": reason,
                "cancel_remarks": remarks,
            },
            {
                "transaction_type": TransactionType.CANCEL,
                "status": LogStatus.SUCCESS,
                "request_payload": payload,
                "response_payload": result.raw_response,
                "api_endpoint": endpoint,
            },
        )
        logger.info(f"Invoice {invoice_id}: IRN {irn} cancelled on {cancel_date}")
        notices.append(("irn.cancelled", invoice_id, doc_no, {"irn": irn, "cancel_date": cancel_date}))
        return CancellationOutcome(
            success=True,
            message="Invoice cancelled successfully",
            data=CancellationData(cancel_date=cancel_date),
        )

    async def _record_cancel_failure(
        self,
        invoice_id: int,
        payload: Dict[str, Any],
        exc: BaseException,
        endpoint: str,
    ) -> CancellationOutcome:
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        error_code = _error_code(exc)
        await self._commit_transition(
            invoice_id,
            {"status": InvoiceStatus.SUBMITTED},
            {
                "transaction_type": TransactionType.CANCEL,
                "status": LogStatus.FAILURE,
                "request_payload": payload,
                "response_payload": {"error": message},
                "error_code": error_code,
                "error_details": message,
                "api_endpoint": endpoint,
            },
        )
        logger.warning(f"Invoice {invoice_id} cancellation failed: {message}")
        return CancellationOutcome(
            success=False,
            message=message if isinstance(exc, CancellationWindowExpiredException) else "Invoice cancellation failed",
            errors=_outcome_errors(exc),
        )

    # ===========================================
    # RECONCILIATION
    # ===========================================

    def _is_stale(self, invoice: TaxInvoice, now: datetime) -> bool:
        since = invoice.last_attempt_at
        return since is None or now - since >= self.stale_after

    async def reconcile(self, invoice_id: int) -> SubmissionOutcome:
        """
        Settle an invoice whose last submission has an unknown outcome.

        - submitting for longer than the stale threshold, or
          submission_failed after a transient failure: ask the IRP for an
          IRN registered against the document, adopt it if found, otherwise
          leave the invoice in submission_failed
        - cancelling for longer than the stale threshold: back to submitted
        """
        gst = await self.settings_service.get()
        return await self._exclusive(
            invoice_id, gst, lambda notices: self._reconcile(invoice_id, gst, notices)
        )

    async def _reconcile(self, invoice_id: int, gst: GSTSettings, notices: List[Notice]) -> SubmissionOutcome:
        now = self._clock()

        async with self.session_factory() as db:
            invoice = await db.get(TaxInvoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundException(invoice_id)

            status = invoice.status
            doc_no, doc_date = invoice.invoice_no, invoice.invoice_date

            if status == InvoiceStatus.CANCELLING:
                if not self._is_stale(invoice, now):
                    raise InvalidStateException(invoice_id, status.value, "reconcile")
                irn = invoice.irn
            elif status == InvoiceStatus.SUBMITTING:
                if not self._is_stale(invoice, now):
                    raise SubmissionInProgressException(invoice_id)
                # Take over the stale claim: only one reconciler may win
                previous = invoice.last_attempt_at
                result = await db.execute(
                    update(TaxInvoice)
                    .where(TaxInvoice.id == invoice_id)
                    .where(TaxInvoice.status == InvoiceStatus.SUBMITTING)
                    .where(
                        TaxInvoice.last_attempt_at == previous if previous is not None
                        else TaxInvoice.last_attempt_at.is_(None)
                    )
                    .values(last_attempt_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if result.rowcount != 1:
                    raise SubmissionInProgressException(invoice_id)
            elif status == InvoiceStatus.SUBMISSION_FAILED and invoice.failure_kind == FailureKind.TRANSIENT:
                if not await self._claim(db, invoice_id, status, InvoiceStatus.SUBMITTING):
                    await self._raise_claim_lost(invoice_id)
            else:
                raise InvalidStateException(
                    invoice_id, status.value, "reconcile",
                    allowed=[
                        InvoiceStatus.SUBMITTING.value,
                        InvoiceStatus.SUBMISSION_FAILED.value,
                        InvoiceStatus.CANCELLING.value,
                    ],
                )

        if status == InvoiceStatus.CANCELLING:
            await self._commit_transition(
                invoice_id,
                {"status": InvoiceStatus.SUBMITTED},
                {
                    "transaction_type": TransactionType.RECONCILE,
                    "status": LogStatus.FAILURE,
                    "error_code": "CANCEL_OUTCOME_UNKNOWN",
                    "error_details": f"Cancellation of IRN {irn} did not complete; cancel again to confirm",
                },
            )
            return SubmissionOutcome(
                success=False,
                message="Stale cancellation released; the invoice is submitted again",
                errors=[OutcomeError(
                    error_code="CANCEL_OUTCOME_UNKNOWN",
                    error_message="Cancellation did not complete; cancel again to confirm",
                )],
            )

        endpoint = EInvoiceApiClient.ENDPOINTS["irn_by_doc"]
        request = {"doctype": "INV", "docnum": doc_no, "docdate": doc_date.strftime("%d/%m/%Y")}

        try:
            lookup = await self.client.get_irn_by_document(gst, doc_no, doc_date)
        except RateLimitException:
            # Stale claims stay claimed; the next sweep looks again
            if status == InvoiceStatus.SUBMISSION_FAILED:
                await self._release(invoice_id, InvoiceStatus.SUBMITTING, status)
            raise
        except REMOTE_FAILURES as e:
            message = e.message
            await self._commit_transition(
                invoice_id,
                {
                    "status": InvoiceStatus.SUBMISSION_FAILED,
                    "error_code": _error_code(e),
                    "error_message": message,
                    "failure_kind": FailureKind.TRANSIENT,
                },
                {
                    "transaction_type": TransactionType.RECONCILE,
                    "status": LogStatus.FAILURE,
                    "request_payload": request,
                    "response_payload": {"error": message},
                    "error_code": _error_code(e),
                    "error_details": message,
                    "api_endpoint": endpoint,
                },
            )
            return SubmissionOutcome(success=False, message="IRN lookup failed", errors=_outcome_errors(e))

        if lookup.found:
            return await self._adopt_remote_irn(invoice_id, lookup, doc_no, notices)

        await self._commit_transition(
            invoice_id,
            {
                "status": InvoiceStatus.SUBMISSION_FAILED,
                "error_code": "IRN_NOT_FOUND",
                "error_message": "No IRN registered on the IRP for this invoice; it can be submitted again",
                "failure_kind": FailureKind.TRANSIENT,
            },
            {
                "transaction_type": TransactionType.RECONCILE,
                "status": LogStatus.SUCCESS,
                "request_payload": request,
                "response_payload": lookup.raw_response,
                "api_endpoint": endpoint,
            },
        )
        logger.info(f"Invoice {invoice_id}: no IRN on the IRP, marked submission_failed")
        return SubmissionOutcome(
            success=False,
            message="No IRN registered on the IRP for this invoice",
            errors=[OutcomeError(error_code="IRN_NOT_FOUND", error_message="No IRN registered on the IRP")],
        )

    async def _candidate_ids(self, gst: GSTSettings, now: datetime) -> Tuple[List[int], List[int], List[int]]:
        stale_cutoff = now - self.stale_after
        async with self.session_factory() as db:
            stale = (await db.execute(
                select(TaxInvoice.id)
                .where(TaxInvoice.status.in_([InvoiceStatus.SUBMITTING, InvoiceStatus.CANCELLING]))
                .where(or_(TaxInvoice.last_attempt_at.is_(None), TaxInvoice.last_attempt_at <= stale_cutoff))
                .order_by(TaxInvoice.id)
                .limit(self.sweep_batch_size)
            )).scalars().all()

            failed_rows = (await db.execute(
                select(TaxInvoice)
                .where(TaxInvoice.status == InvoiceStatus.SUBMISSION_FAILED)
                .where(TaxInvoice.failure_kind == FailureKind.TRANSIENT)
                .where(TaxInvoice.irn.is_(None))
                .where(TaxInvoice.auto_retry_count < gst.retry_attempts)
                .order_by(TaxInvoice.last_attempt_at)
                .limit(self.sweep_batch_size)
            )).scalars().all()
            due = [
                inv.id for inv in failed_rows
                if self.retry_policy.is_due(
                    inv.auto_retry_count, gst.retry_attempts, inv.failure_kind, inv.last_attempt_at, now
                )
            ]

            validated: List[int] = []
            if gst.auto_submit_invoices:
                validated = list((await db.execute(
                    select(TaxInvoice.id)
                    .where(TaxInvoice.status == InvoiceStatus.VALIDATED)
                    .where(TaxInvoice.irn.is_(None))
                    .order_by(TaxInvoice.id)
                    .limit(self.sweep_batch_size)
                )).scalars().all())

        return list(stale), due, validated

    async def run_reconciliation_sweep(self) -> Dict[str, Any]:
        """
        Background pass: settle stale claims, auto-retry transient failures
        that are due under the retry policy, and auto-submit validated
        invoices when auto_submit_invoices is on.
        """
        stats: Dict[str, Any] = {
            "reconciled": 0,
            "retried": 0,
            "auto_submitted": 0,
            "succeeded": 0,
            "failed": 0,
            "errors": 0,
        }
        try:
            gst = await self.settings_service.get()
        except ConfigurationException as e:
            logger.warning(f"E-invoice sweep skipped: {e.message}")
            stats["skipped"] = "configuration"
            return stats

        stale, due, validated = await self._candidate_ids(gst, self._clock())
        logger.info(
            f"E-invoice sweep: {len(stale)} stale, {len(due)} due for retry, {len(validated)} to auto-submit"
        )

        batches: List[Tuple[str, List[int], Callable[[int], Awaitable[SubmissionOutcome]]]] = [
            ("reconciled", stale, self.reconcile),
            ("retried", due, lambda i: self.retry(i, automatic=True)),
            ("auto_submitted", validated, self.submit),
        ]
        for label, ids, action in batches:
            for invoice_id in ids:
                try:
                    outcome = await action(invoice_id)
                except RateLimitException as e:
                    logger.warning(f"E-invoice sweep stopped by rate limit, retry after {e.retry_after}s")
                    stats["errors"] += 1
                    return stats
                except AppException as e:
                    logger.warning(f"E-invoice sweep: invoice {invoice_id} skipped ({e.code.value}: {e.message})")
                    stats["errors"] += 1
                    continue
                except Exception:
                    logger.exception(f"E-invoice sweep: invoice {invoice_id} raised")
                    stats["errors"] += 1
                    continue

                stats[label] += 1
                stats["succeeded" if outcome.success else "failed"] += 1

        logger.info(f"E-invoice sweep complete: {stats}")
        return stats

    # ===========================================
    # READ-ONLY OPERATIONS
    # ===========================================

    async def get_logs(self, invoice_id: int) -> List[EInvoiceLog]:
        """Audit entries for an invoice, oldest first."""
        async with self.session_factory() as db:
            if await db.get(TaxInvoice, invoice_id) is None:
                raise InvoiceNotFoundException(invoice_id)
        return await self.log_service.list_for_invoice(invoice_id)

    async def validate_invoice(self, invoice_id: int) -> ValidationReport:
        """
        Readiness report without calling the IRP. A ready draft is promoted
        to validated.
        """
        async with self.session_factory() as db:
            invoice = await self._load_invoice(db, invoice_id)
            errors = readiness_errors(invoice)
            if invoice.irn:
                errors.append(f"Invoice already has IRN {invoice.irn}")

            try:
                await self.settings_service.get()
            except ConfigurationException as e:
                errors.append(e.message)

            if not errors and invoice.status == InvoiceStatus.DRAFT:
                await self._claim(
                    db, invoice_id, InvoiceStatus.DRAFT, InvoiceStatus.VALIDATED, touch_attempt=False
                )

        return ValidationReport(valid=not errors, errors=errors)

    async def test_connection(self) -> ConnectionResult:
        """Check the configured IRP credentials. Logged, touches no invoice."""
        gst = await self.settings_service.get()
        result = await self.client.test_connection(gst)
        await self.log_service.record(
            transaction_type=TransactionType.TEST_CONNECTION,
            status=LogStatus.SUCCESS if result.success else LogStatus.FAILURE,
            response_payload=result.model_dump(),
            error_details=None if result.success else result.message,
            api_endpoint=EInvoiceApiClient.ENDPOINTS["auth"],
        )
        return result

    # ===========================================
    # WEBHOOK
    # ===========================================

    async def _notify_webhook(
        self,
        gst: GSTSettings,
        event: str,
        invoice_id: int,
        invoice_no: str,
        data: Dict[str, Any],
    ) -> None:
        """Best-effort notification; never changes the outcome."""
        if not gst.webhook_url:
            return
        body = {
            "event": event,
            "invoice_id": invoice_id,
            "invoice_no": invoice_no,
            "data": data,
            "timestamp": self._clock().isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=min(gst.request_timeout, 10.0)) as client:
                response = await client.post(gst.webhook_url, json=body)
            if response.status_code >= 400:
                logger.warning(f"Webhook {event} for invoice {invoice_id} returned HTTP {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Webhook {event} for invoice {invoice_id} failed: {e}")

    async def _send_notices(self, gst: GSTSettings, notices: List[Notice]) -> None:
        for event, invoice_id, invoice_no, data in notices:
            await self._notify_webhook(gst, event, invoice_id, invoice_no, data)

    async def aclose(self) -> None:
        """Wait for shielded operations, then release shared resources."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        await self.client.rate_limiter.close()


# ===========================================
# SERVICE FACTORY
# ===========================================

def build_einvoice_service(
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    rate_limiter: Optional[RateLimiter] = None,
    token_manager: Optional[GSTTokenManager] = None,
) -> EInvoiceService:
    """
    Wire the e-invoice core. Called once at the composition root; tests
    pass their own session factory and collaborators.
    """
    session_factory = session_factory or async_session_factory
    client = EInvoiceApiClient(
        token_manager=token_manager or GSTTokenManager(),
        rate_limiter=rate_limiter or build_rate_limiter(),
    )
    return EInvoiceService(
        session_factory=session_factory,
        settings_service=GSTSettingsService(session_factory),
        client=client,
        log_service=EInvoiceLogService(session_factory),
    )
