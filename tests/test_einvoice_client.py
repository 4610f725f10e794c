"""
GST Invoice Admin - IRP API Client Tests

Runs the client against the respx mock IRP (tests/fixtures/irp_mock.py).
"""

from datetime import date

import pytest

from app.schemas.einvoice import GSTSettings
from app.services.einvoice_client import (
    EInvoiceApiClient,
    cancel_reason_code,
    format_errors,
)
from app.services.gst_token_manager import GSTTokenManager
from app.services.rate_limiter import SlidingWindowRateLimiter
from app.utils.error_handling import (
    CancellationWindowExpiredException,
    GSTAuthenticationException,
    RateLimitException,
    TransientNetworkException,
)

from conftest import TEST_GST_SETTINGS


def invoice_payload(doc_no: str = "INV-2026-0042", doc_date: str = "19/10/2026") -> dict:
    return {
        "Version": "1.1",
        "TranDtls": {"TaxSch": "GST", "SupTyp": "B2B", "RegRev": "N"},
        "DocDtls": {"Typ": "INV", "No": doc_no, "Dt": doc_date},
        "ItemList": [],
        "ValDtls": {"TotInvVal": 1180.0},
    }


@pytest.fixture
def gst() -> GSTSettings:
    return GSTSettings(**TEST_GST_SETTINGS)


@pytest.fixture
def api_client() -> EInvoiceApiClient:
    return EInvoiceApiClient(
        token_manager=GSTTokenManager(),
        rate_limiter=SlidingWindowRateLimiter(window_seconds=60),
        max_wait_seconds=0,
    )


class TestSubmit:

    @pytest.mark.asyncio
    async def test_success_returns_irn(self, api_client, gst, irp):
        result = await api_client.submit(gst, invoice_payload())

        assert result.success
        assert len(result.irn) == 64
        assert result.ack_no is not None
        assert result.qr_code_url.endswith(result.irn)
        assert irp.calls.auth == 1
        assert irp.calls.generate == 1

    @pytest.mark.asyncio
    async def test_protocol_headers_sent(self, api_client, gst, irp):
        await api_client.submit(gst, invoice_payload())

        headers = irp.calls.headers[-1]
        assert headers["gstin"] == gst.company_gstin
        assert headers["user_name"] == "api_user"
        assert headers["client_id"] == gst.client_id
        assert headers["authtoken"] == "token-1"

    @pytest.mark.asyncio
    async def test_custom_headers_do_not_override_protocol_headers(self, api_client, gst, irp):
        gst = gst.model_copy(update={"custom_headers": {"X-GSP-Id": "acme", "gstin": "OVERRIDE"}})

        await api_client.submit(gst, invoice_payload())

        headers = irp.calls.headers[-1]
        assert headers["x-gsp-id"] == "acme"
        assert headers["gstin"] == gst.company_gstin

    @pytest.mark.asyncio
    async def test_rejection_carries_error_details(self, api_client, gst, irp):
        irp.fail_next("generate", "reject")

        result = await api_client.submit(gst, invoice_payload())

        assert not result.success
        assert result.status == 0
        assert result.error_details[0].error_code == "2172"
        assert "Buyer GSTIN" in format_errors(result.error_details)

    @pytest.mark.asyncio
    async def test_token_rejection_refreshes_once(self, api_client, gst, irp):
        await api_client.submit(gst, invoice_payload("INV-1"))
        irp.expire_tokens()

        result = await api_client.submit(gst, invoice_payload("INV-2"))

        assert result.success
        assert irp.calls.auth == 2
        assert irp.calls.generate == 3

    @pytest.mark.asyncio
    async def test_http_401_refreshes_once(self, api_client, gst, irp):
        irp.fail_next("generate", "http_401")

        result = await api_client.submit(gst, invoice_payload())

        assert result.success
        assert irp.calls.auth == 2

    @pytest.mark.asyncio
    async def test_second_token_rejection_is_auth_error(self, api_client, gst, irp):
        irp.fail_next("generate", "token_expired", "token_expired")

        with pytest.raises(GSTAuthenticationException):
            await api_client.submit(gst, invoice_payload())

        assert irp.calls.generate == 2
        assert api_client.token_manager.current is None

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, api_client, gst, irp):
        irp.fail_next("generate", "timeout")

        with pytest.raises(TransientNetworkException) as exc_info:
            await api_client.submit(gst, invoice_payload())

        assert "timeout" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, api_client, gst, irp):
        irp.fail_next("generate", "http_503")

        with pytest.raises(TransientNetworkException) as exc_info:
            await api_client.submit(gst, invoice_payload())

        assert exc_info.value.upstream_status == 503

    @pytest.mark.asyncio
    async def test_rate_limit_blocks_before_any_request(self, api_client, gst, irp):
        gst = gst.model_copy(update={"rate_limit_requests": 1})
        await api_client.submit(gst, invoice_payload("INV-1"))

        with pytest.raises(RateLimitException):
            await api_client.submit(gst, invoice_payload("INV-2"))

        assert irp.calls.generate == 1


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_success(self, api_client, gst, irp):
        issued = irp.register("INV-2026-0042", "19/10/2026")

        result = await api_client.cancel(gst, issued.irn, "duplicate", "Raised twice")

        assert result.success
        assert result.cancel_date == "2026-10-19 11:00:00"
        assert irp.calls.bodies[-1] == {"Irn": issued.irn, "CnlRsn": "1", "CnlRem": "Raised twice"}

    @pytest.mark.asyncio
    async def test_window_expired(self, api_client, gst, irp):
        issued = irp.register("INV-2026-0042", "19/10/2026")
        irp.fail_next("cancel", "window_expired")

        with pytest.raises(CancellationWindowExpiredException) as exc_info:
            await api_client.cancel(gst, issued.irn, "other")

        assert exc_info.value.error_details[0]["error_code"] == "2270"

    @pytest.mark.asyncio
    async def test_unknown_irn_is_failure_result(self, api_client, gst, irp):
        result = await api_client.cancel(gst, "f" * 64, "other")

        assert not result.success
        assert result.error_details[0].error_code == "2154"

    def test_payload_truncates_remarks(self):
        payload = EInvoiceApiClient.build_cancel_payload("a" * 64, "data entry mistake", "x" * 150)

        assert payload["CnlRsn"] == "2"
        assert len(payload["CnlRem"]) == 100

    @pytest.mark.parametrize("reason,code", [
        ("duplicate", "1"),
        ("Data Entry Mistake", "2"),
        ("order_cancelled", "3"),
        ("other", "4"),
        ("3", "3"),
        ("customer changed mind", "4"),
    ])
    def test_reason_codes(self, reason, code):
        assert cancel_reason_code(reason) == code


class TestLookup:

    @pytest.mark.asyncio
    async def test_found(self, api_client, gst, irp):
        issued = irp.register("INV-2026-0042", "19/10/2026")

        result = await api_client.get_irn_by_document(gst, "INV-2026-0042", date(2026, 10, 19))

        assert result.found
        assert result.irn == issued.irn
        assert result.ack_no == str(issued.ack_no)

    @pytest.mark.asyncio
    async def test_not_found(self, api_client, gst, irp):
        result = await api_client.get_irn_by_document(gst, "INV-2026-0042", date(2026, 10, 19))

        assert not result.found
        assert result.error_details[0].error_code == "2283"


class TestConnection:

    @pytest.mark.asyncio
    async def test_connection_ok(self, api_client, gst, irp):
        result = await api_client.test_connection(gst)

        assert result.success
        assert irp.calls.auth == 1

    @pytest.mark.asyncio
    async def test_bad_credentials(self, api_client, gst, irp):
        irp.reject_credentials("AUTH01", "Invalid username or password")

        result = await api_client.test_connection(gst)

        assert not result.success
        assert "Invalid username or password" in result.message

    @pytest.mark.asyncio
    async def test_unreachable(self, api_client, gst, irp):
        irp.fail_next("auth", "timeout")

        result = await api_client.test_connection(gst)

        assert not result.success
        assert "timed out" in result.message
