"""
GST Invoice Admin - Tax Invoice Model

Tax invoice model with GST e-invoicing (IRN) support.

E-invoice compliance rules:
- An invoice carries at most one IRN, ever. Once submitted, the IRN never changes.
- irn is set if and only if status is SUBMITTED, CANCELLING or CANCELLED.
- SUBMITTING and CANCELLING are short-lived claims held while the IRP call
  is in flight.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel

if TYPE_CHECKING:
    from app.models.customer import Customer


class InvoiceStatus(str, Enum):
    """Invoice e-invoicing workflow."""
    DRAFT = "draft"                            # Not yet validated
    VALIDATED = "validated"                    # Ready for IRP submission
    SUBMITTING = "submitting"                  # IRP call in flight
    SUBMITTED = "submitted"                    # IRN issued
    SUBMISSION_FAILED = "submission_failed"    # Last attempt failed, retryable
    CANCELLING = "cancelling"                  # IRP cancel call in flight
    CANCELLED = "cancelled"                    # IRN cancelled on the IRP


class FailureKind(str, Enum):
    """Classification of the last submission failure."""
    TRANSIENT = "transient"    # Timeout, 5xx, throttling: worth retrying
    PERMANENT = "permanent"    # Rejected by the IRP: fix the data first


# Statuses from which a fresh submission may start
SUBMITTABLE_STATUSES = (
    InvoiceStatus.DRAFT,
    InvoiceStatus.VALIDATED,
    InvoiceStatus.SUBMISSION_FAILED,
)


class TaxInvoice(BaseModel):
    """
    Tax invoice model.

    Only the GST e-invoicing columns are written by the core; everything
    else is owned by the invoice CRUD screens.
    """

    __tablename__ = "tax_invoices"

    # Invoice Number
    invoice_no: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
    )
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Buyer
    customer_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("master_customer.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Supply
    supply_type: Mapped[str] = mapped_column(String(10), default="B2B", nullable=False)
    place_supply: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Grand totals
    grand_total_qty: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=3),
        nullable=False,
        default=Decimal("0"),
    )
    grand_total_taxable_amt: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    grand_total_cgst_amt: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    grand_total_sgst_amt: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    grand_total_igst_amt: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    grand_total_amt: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Status
    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus),
        default=InvoiceStatus.DRAFT,
        nullable=False,
        index=True,
    )

    # ===========================================
    # GST E-INVOICING (IRP)
    # ===========================================

    irn: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        comment="Invoice Reference Number issued by the IRP",
    )
    ack_no: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    ack_date: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    qr_code_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    signed_invoice: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    signed_qr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cancellation
    cancel_date: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancel_remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Last failure
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_kind: Mapped[Optional[FailureKind]] = mapped_column(
        SQLEnum(FailureKind),
        nullable=True,
    )

    # Background retry bookkeeping
    auto_retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    customer: Mapped[Optional["Customer"]] = relationship(
        "Customer",
        back_populates="invoices",
    )
    items: Mapped[List["InvoiceItem"]] = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.id",
    )

    @property
    def has_irn(self) -> bool:
        return bool(self.irn)

    def __repr__(self) -> str:
        return f"<TaxInvoice(id={self.id}, number={self.invoice_no}, status={self.status})>"


class InvoiceItem(BaseModel):
    """
    Invoice line item model.
    """

    __tablename__ = "invoice_details"

    # Invoice
    invoice_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("tax_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Item Details
    product_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    product_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hsn_sac_code: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    unit: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    is_service: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    qty: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=3),
        nullable=False,
        default=Decimal("1"),
    )
    rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    # Amounts
    taxable_amt: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False, default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False, default=Decimal("0.00"))
    cgst_rate: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=2), nullable=False, default=Decimal("0.00"))
    cgst_amt: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False, default=Decimal("0.00"))
    sgst_rate: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=2), nullable=False, default=Decimal("0.00"))
    sgst_amt: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False, default=Decimal("0.00"))
    igst_rate: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=2), nullable=False, default=Decimal("0.00"))
    igst_amt: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False, default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False, default=Decimal("0.00"))

    # Relationships
    invoice: Mapped["TaxInvoice"] = relationship(
        "TaxInvoice",
        back_populates="items",
    )

    def __repr__(self) -> str:
        return f"<InvoiceItem(id={self.id}, hsn={self.hsn_sac_code})>"
