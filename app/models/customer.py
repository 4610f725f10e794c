"""
GST Invoice Admin - Customer Model

Buyer master record. Customer CRUD belongs to the surrounding admin
application; the e-invoicing core only reads the buyer block from here.
"""

from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel

if TYPE_CHECKING:
    from app.models.invoice import TaxInvoice


class Customer(BaseModel):
    """
    Customer model for tracking buyers.

    Used for the BuyerDtls block of an e-invoice.
    """

    __tablename__ = "master_customer"

    # Basic Info
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Tax Information (mandatory for B2B e-invoicing)
    gstin: Mapped[Optional[str]] = mapped_column(
        String(15),
        nullable=True,
        index=True,
        comment="Buyer GSTIN (required for B2B e-invoicing)",
    )

    # Contact
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Address
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    state_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    pin_code: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    invoices: Mapped[List["TaxInvoice"]] = relationship(
        "TaxInvoice",
        back_populates="customer",
    )
