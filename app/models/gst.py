"""
GST Invoice Admin - GST Settings & E-Invoice Log Models

- GSTSetting: one row per configuration key (upserted by setting_key)
- EInvoiceLog: append-only audit trail, one row per IRP call attempt
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, Enum as SQLEnum, event
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.base import BaseModel, utcnow


class GSTSetting(BaseModel):
    """Key/value GST configuration row."""

    __tablename__ = "gst_settings"

    setting_key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
    )
    setting_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<GSTSetting(key={self.setting_key})>"


class TransactionType(str, Enum):
    """Kind of IRP call recorded in the audit trail."""
    SUBMIT = "submit"
    RETRY = "retry"
    CANCEL = "cancel"
    TEST_CONNECTION = "test_connection"
    RECONCILE = "reconcile"


class LogStatus(str, Enum):
    """Outcome of the recorded call."""
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class EInvoiceLog(Base):
    """
    Immutable audit record of one IRP call.

    Rows are only ever inserted. Any attempt to update or delete one through
    the ORM raises, see the mapper listeners below.
    """

    __tablename__ = "e_invoice_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    invoice_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        index=True,
        comment="NULL for connection tests",
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType),
        nullable=False,
    )
    status: Mapped[LogStatus] = mapped_column(
        SQLEnum(LogStatus),
        nullable=False,
        index=True,
    )

    api_endpoint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    request_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    response_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Set in Python so entries written in the same second keep their order
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<EInvoiceLog(id={self.id}, invoice_id={self.invoice_id}, "
            f"type={self.transaction_type}, status={self.status})>"
        )


class ImmutableLogError(Exception):
    """Raised when code tries to rewrite the e-invoice audit trail."""


@event.listens_for(EInvoiceLog, "before_update")
def _block_log_update(mapper, connection, target):
    raise ImmutableLogError(f"e_invoice_logs row {target.id} is immutable")


@event.listens_for(EInvoiceLog, "before_delete")
def _block_log_delete(mapper, connection, target):
    raise ImmutableLogError(f"e_invoice_logs row {target.id} cannot be deleted")
