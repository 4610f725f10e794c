"""
GST Invoice Admin - IRP Payload Builder Tests
"""

from datetime import date
from decimal import Decimal

import pytest

from app.models.customer import Customer
from app.models.invoice import InvoiceItem, TaxInvoice
from app.schemas.einvoice import GSTSettings
from app.services.einvoice_payload import build_payload, is_inter_state, readiness_errors

from conftest import BUYER_GSTIN, LOCAL_BUYER_GSTIN, TEST_GST_SETTINGS


@pytest.fixture
def gst() -> GSTSettings:
    return GSTSettings(**TEST_GST_SETTINGS)


def make_item(**overrides) -> InvoiceItem:
    values = dict(
        product_name="Laptop",
        hsn_sac_code="84713010",
        unit="nos",
        qty=Decimal("2"),
        rate=Decimal("500.00"),
        taxable_amt=Decimal("1000.00"),
        discount=Decimal("0"),
        cgst_rate=Decimal("9"),
        cgst_amt=Decimal("90.00"),
        sgst_rate=Decimal("9"),
        sgst_amt=Decimal("90.00"),
        igst_rate=Decimal("18"),
        igst_amt=Decimal("180.00"),
        total_amount=Decimal("1180.00"),
        is_service=False,
    )
    values.update(overrides)
    return InvoiceItem(**values)


def make_invoice(gstin=BUYER_GSTIN, state_code="29", items=None) -> TaxInvoice:
    customer = Customer(
        company_name="Bharat Traders",
        gstin=gstin,
        state_code=state_code,
        state_name="Karnataka",
        address="5 Residency Road",
        pin_code="560025",
    )
    return TaxInvoice(
        invoice_no="INV-2026-0042",
        invoice_date=date(2026, 10, 9),
        customer=customer,
        supply_type="B2B",
        grand_total_taxable_amt=Decimal("1000.00"),
        grand_total_cgst_amt=Decimal("90.00"),
        grand_total_sgst_amt=Decimal("90.00"),
        grand_total_igst_amt=Decimal("180.00"),
        grand_total_amt=Decimal("1180.00"),
        items=items if items is not None else [make_item()],
    )


class TestReadiness:

    def test_complete_invoice_is_ready(self):
        assert readiness_errors(make_invoice()) == []

    def test_missing_buyer_gstin(self):
        errors = readiness_errors(make_invoice(gstin=None))
        assert errors == ["Customer GSTIN is required for e-invoice"]

    def test_malformed_buyer_gstin(self):
        errors = readiness_errors(make_invoice(gstin="29AAGCB7383J1Z"))
        assert any("not a valid GSTIN" in e for e in errors)

    def test_no_items(self):
        assert "At least one item is required" in readiness_errors(make_invoice(items=[]))

    def test_item_problems_are_numbered(self):
        invoice = make_invoice(items=[
            make_item(),
            make_item(hsn_sac_code=None, qty=Decimal("0")),
        ])

        errors = readiness_errors(invoice)

        assert "Item 2: HSN/SAC code is required" in errors
        assert "Item 2: Valid quantity is required" in errors
        assert not any(e.startswith("Item 1") for e in errors)

    def test_missing_customer(self):
        invoice = make_invoice()
        invoice.customer = None
        assert "Customer is required" in readiness_errors(invoice)


class TestBuildPayload:

    def test_document_and_parties(self, gst):
        payload = build_payload(make_invoice(), gst)

        assert payload["Version"] == "1.1"
        assert payload["DocDtls"] == {"Typ": "INV", "No": "INV-2026-0042", "Dt": "09/10/2026"}
        assert payload["SellerDtls"]["Gstin"] == gst.company_gstin
        assert payload["SellerDtls"]["Stcd"] == "27"
        assert payload["SellerDtls"]["Pin"] == 411001
        assert payload["BuyerDtls"]["Gstin"] == BUYER_GSTIN
        assert payload["BuyerDtls"]["Pos"] == "29"

    def test_inter_state_uses_igst(self, gst):
        invoice = make_invoice()
        payload = build_payload(invoice, gst)

        assert is_inter_state(invoice, gst)
        item = payload["ItemList"][0]
        assert item["IgstAmt"] == 180.0
        assert item["CgstAmt"] == 0
        assert item["GstRt"] == 18.0
        assert payload["ValDtls"]["IgstVal"] == 180.0
        assert payload["ValDtls"]["CgstVal"] == 0

    def test_intra_state_uses_cgst_and_sgst(self, gst):
        invoice = make_invoice(gstin=LOCAL_BUYER_GSTIN, state_code="27")
        payload = build_payload(invoice, gst)

        assert not is_inter_state(invoice, gst)
        item = payload["ItemList"][0]
        assert item["CgstAmt"] == 90.0
        assert item["SgstAmt"] == 90.0
        assert item["IgstAmt"] == 0
        assert item["GstRt"] == 18.0
        assert payload["ValDtls"]["IgstVal"] == 0
        assert payload["ValDtls"]["TotInvVal"] == 1180.0

    def test_items_numbered_and_units_normalised(self, gst):
        invoice = make_invoice(items=[make_item(), make_item(unit=None, is_service=True, hsn_sac_code="998314")])
        items = build_payload(invoice, gst)["ItemList"]

        assert [i["SlNo"] for i in items] == ["1", "2"]
        assert items[0]["Unit"] == "NOS"
        assert items[1]["Unit"] == "NOS"
        assert items[1]["IsServc"] == "Y"
        assert items[0]["IsServc"] == "N"

    def test_seller_state_falls_back_to_gstin_prefix(self, gst):
        gst = gst.model_copy(update={"company_state_code": None})
        payload = build_payload(make_invoice(), gst)

        assert payload["SellerDtls"]["Stcd"] == "27"
