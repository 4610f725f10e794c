"""
GST Invoice Admin - E-Invoice Payload Builder

Builds the IRP schema 1.1 JSON from a persisted TaxInvoice, its items and
its buyer. Payloads are only ever built from stored data.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.models.invoice import InvoiceItem, TaxInvoice
from app.schemas.einvoice import GSTSettings
from app.utils.error_handling import is_valid_gstin


SCHEMA_VERSION = "1.1"
DEFAULT_UNIT = "NOS"


def _num(value: Optional[Decimal]) -> float:
    """Decimal column to JSON number, 0 for NULL."""
    if value is None:
        return 0.0
    return float(value)


def seller_state_code(gst: GSTSettings) -> str:
    """Configured state code, else the first two digits of the GSTIN."""
    return (gst.company_state_code or gst.company_gstin[:2]).strip()


def is_inter_state(invoice: TaxInvoice, gst: GSTSettings) -> bool:
    buyer_state = invoice.customer.state_code if invoice.customer else None
    return (buyer_state or "").strip() != seller_state_code(gst)


def readiness_errors(invoice: TaxInvoice) -> List[str]:
    """
    Problems that would make the IRP reject the invoice. Empty when the
    invoice is ready.
    """
    errors: List[str] = []

    if invoice.customer is None:
        errors.append("Customer is required")
    elif not invoice.customer.gstin:
        errors.append("Customer GSTIN is required for e-invoice")
    elif not is_valid_gstin(invoice.customer.gstin):
        errors.append(f"Customer GSTIN {invoice.customer.gstin} is not a valid GSTIN")

    if invoice.customer is not None and not invoice.customer.state_code:
        errors.append("Customer state code is required")

    if not invoice.invoice_date:
        errors.append("Invoice date is required")

    if not invoice.supply_type:
        errors.append("Supply type is required")

    if not invoice.items:
        errors.append("At least one item is required")

    for index, item in enumerate(invoice.items, start=1):
        if not (item.product_name or item.product_description):
            errors.append(f"Item {index}: Product is required")
        if item.qty is None or item.qty <= 0:
            errors.append(f"Item {index}: Valid quantity is required")
        if item.rate is None or item.rate <= 0:
            errors.append(f"Item {index}: Valid rate is required")
        if not item.hsn_sac_code:
            errors.append(f"Item {index}: HSN/SAC code is required")

    return errors


def _item_payload(index: int, item: InvoiceItem, inter_state: bool) -> Dict[str, Any]:
    taxable = _num(item.taxable_amt)
    if inter_state:
        gst_rate = _num(item.igst_rate)
    else:
        gst_rate = _num(item.cgst_rate) + _num(item.sgst_rate)

    return {
        "SlNo": str(index),
        "PrdDesc": (item.product_name or item.product_description or "")[:300],
        "IsServc": "Y" if item.is_service else "N",
        "HsnCd": item.hsn_sac_code,
        "Qty": _num(item.qty) or 1,
        "Unit": (item.unit or DEFAULT_UNIT).upper()[:8],
        "UnitPrice": _num(item.rate),
        "TotAmt": taxable,
        "Discount": _num(item.discount),
        "PreTaxVal": taxable,
        "AssAmt": taxable,
        "GstRt": gst_rate,
        "IgstAmt": _num(item.igst_amt) if inter_state else 0,
        "CgstAmt": 0 if inter_state else _num(item.cgst_amt),
        "SgstAmt": 0 if inter_state else _num(item.sgst_amt),
        "CesRt": 0,
        "CesAmt": 0,
        "CesNonAdvlAmt": 0,
        "StateCesRt": 0,
        "StateCesAmt": 0,
        "StateCesNonAdvlAmt": 0,
        "OthChrg": 0,
        "TotItemVal": _num(item.total_amount),
    }


def build_payload(invoice: TaxInvoice, gst: GSTSettings) -> Dict[str, Any]:
    """
    Build the IRN generation request body.

    The caller must have loaded invoice.customer and invoice.items.
    """
    inter_state = is_inter_state(invoice, gst)
    buyer = invoice.customer

    return {
        "Version": SCHEMA_VERSION,
        "TranDtls": {
            "TaxSch": "GST",
            "SupTyp": invoice.supply_type or "B2B",
            "RegRev": "N",
        },
        "DocDtls": {
            "Typ": "INV",
            "No": invoice.invoice_no,
            "Dt": invoice.invoice_date.strftime("%d/%m/%Y"),
        },
        "SellerDtls": {
            "Gstin": gst.company_gstin,
            "LglNm": gst.company_legal_name or "",
            "TrdNm": gst.company_trade_name or gst.company_legal_name or "",
            "Addr1": gst.company_address1 or "",
            "Addr2": gst.company_address2 or "",
            "Loc": gst.company_city or "",
            "Pin": int(gst.company_pincode) if (gst.company_pincode or "").isdigit() else None,
            "Stcd": seller_state_code(gst),
            "Ph": gst.company_phone or "",
            "Em": gst.company_email or "",
        },
        "BuyerDtls": {
            "Gstin": buyer.gstin,
            "LglNm": buyer.company_name,
            "TrdNm": buyer.company_name,
            "Pos": buyer.state_code,
            "Addr1": buyer.address or "",
            "Addr2": "",
            "Loc": buyer.state_name or "",
            "Pin": int(buyer.pin_code) if (buyer.pin_code or "").isdigit() else None,
            "Stcd": buyer.state_code,
            "Ph": buyer.phone or "",
            "Em": buyer.email or "",
        },
        "ItemList": [
            _item_payload(index, item, inter_state)
            for index, item in enumerate(invoice.items, start=1)
        ],
        "ValDtls": {
            "AssVal": _num(invoice.grand_total_taxable_amt),
            "CgstVal": 0 if inter_state else _num(invoice.grand_total_cgst_amt),
            "SgstVal": 0 if inter_state else _num(invoice.grand_total_sgst_amt),
            "IgstVal": _num(invoice.grand_total_igst_amt) if inter_state else 0,
            "CesVal": 0,
            "StCesVal": 0,
            "Discount": 0,
            "OthChrg": 0,
            "RndOffAmt": 0,
            "TotInvVal": _num(invoice.grand_total_amt),
        },
    }
