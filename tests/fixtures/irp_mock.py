"""
Mock NIC IRP Server for E-Invoice Testing

Configurable mock of the GST Invoice Registration Portal built on respx,
so the e-invoice core can be exercised end to end without the sandbox.

The mock keeps its own registry of issued IRNs, which makes it possible to
simulate the dangerous case: the IRP registers the invoice but the response
never reaches us.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import respx
from respx import MockRouter


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class IssuedIRN:
    """An IRN registered on the mock IRP."""
    irn: str
    doc_no: str
    doc_date: str
    ack_no: int
    ack_date: str
    cancelled: bool = False
    cancel_date: Optional[str] = None

    def to_data(self) -> Dict[str, Any]:
        return {
            "AckNo": self.ack_no,
            "AckDt": self.ack_date,
            "Irn": self.irn,
            "SignedInvoice": f"signed.{self.irn[:16]}",
            "SignedQRCode": f"qr.{self.irn[:16]}",
            "QRCodeUrl": f"https://einvoice.test/qr/{self.irn}",
            "Status": "CNL" if self.cancelled else "ACT",
        }


@dataclass
class RequestLog:
    """Calls received per endpoint."""
    auth: int = 0
    generate: int = 0
    cancel: int = 0
    lookup: int = 0
    bodies: List[Dict[str, Any]] = field(default_factory=list)
    headers: List[Dict[str, str]] = field(default_factory=list)


# =============================================================================
# MOCK IRP SERVER
# =============================================================================

class MockIRPServer:
    """
    Configurable mock IRP.

    Usage:
        irp = MockIRPServer()
        with irp.activate():
            outcome = await service.submit(invoice_id)

        # Script faults for the next calls to an endpoint
        irp.fail_next("generate", "timeout_after_register")
        irp.fail_next("cancel", "window_expired")

    Fault actions:
        timeout                 raise ReadTimeout before doing anything
        timeout_after_register  register the IRN, then raise ReadTimeout
        http_500 / http_503     return that status
        http_401                return 401 (token rejected)
        token_expired           return Status 0 with error 1005
        reject                  return Status 0 with a validation error
        window_expired          (cancel only) return error 2270
    """

    BASE_URL = "https://irp.test"

    def __init__(self):
        self.issued: Dict[Tuple[str, str], IssuedIRN] = {}
        self.calls = RequestLog()
        self.valid_tokens: set = set()
        self.token_expiry: Optional[str] = None
        self.auth_failure: Optional[Dict[str, Any]] = None
        self._faults: Dict[str, List[str]] = {"auth": [], "generate": [], "cancel": [], "lookup": []}
        self._ack_counter = 112010000000000
        self._token_counter = 0
        self._router: Optional[MockRouter] = None
        self.webhooks: List[Dict[str, Any]] = []
        self.webhook_status = 200
        self.on_webhook: Optional[Callable[[Dict[str, Any]], None]] = None

    # ===========================================
    # Configuration
    # ===========================================

    def fail_next(self, endpoint: str, *actions: str) -> None:
        """Queue fault actions for the next calls to `endpoint`."""
        self._faults[endpoint].extend(actions)

    def expire_tokens(self) -> None:
        """Server-side expiry: every token issued so far becomes invalid."""
        self.valid_tokens.clear()

    def reject_credentials(self, code: str = "1005", message: str = "Invalid Token") -> None:
        self.auth_failure = {"ErrorCode": code, "ErrorMessage": message}

    def register(self, doc_no: str, doc_date: str) -> IssuedIRN:
        """Register an IRN directly, as if generated by someone else."""
        return self._issue(doc_no, doc_date)

    def lookup(self, doc_no: str, doc_date: str) -> Optional[IssuedIRN]:
        return self.issued.get((doc_no, doc_date))

    def capture_webhooks(
        self,
        path: str = "/hooks/einvoice",
        status_code: int = 200,
        on_receive: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> str:
        """Receive webhook notifications on the mock host. Returns the URL to configure."""
        self.webhook_status = status_code
        self.on_webhook = on_receive
        self._router.post(path).mock(side_effect=self._handle_webhook)
        return f"{self.BASE_URL}{path}"

    def _issue(self, doc_no: str, doc_date: str) -> IssuedIRN:
        key = (doc_no, doc_date)
        if key not in self.issued:
            self._ack_counter += 1
            irn = hashlib.sha256(f"27AABCU9603R1ZX|INV|{doc_no}|{doc_date}".encode()).hexdigest()
            self.issued[key] = IssuedIRN(
                irn=irn,
                doc_no=doc_no,
                doc_date=doc_date,
                ack_no=self._ack_counter,
                ack_date="2026-10-19 10:15:00",
            )
        return self.issued[key]

    # ===========================================
    # Mock Router Setup
    # ===========================================

    def activate(self) -> MockRouter:
        """Activate the mock server and return the router."""
        self._router = respx.mock(base_url=self.BASE_URL, assert_all_called=False)
        self._setup_routes()
        return self._router

    def _setup_routes(self):
        if not self._router:
            return

        self._router.post("/eivital/v1.04/auth").mock(side_effect=self._handle_auth)
        self._router.post("/eicore/v1.03/Invoice/Cancel").mock(side_effect=self._handle_cancel)
        self._router.get("/eicore/v1.03/Invoice/irnbydocdetails").mock(side_effect=self._handle_lookup)
        self._router.post("/eicore/v1.03/Invoice").mock(side_effect=self._handle_generate)

    # ===========================================
    # Helpers
    # ===========================================

    @staticmethod
    def _error(code: str, message: str, status_code: int = 200) -> httpx.Response:
        return httpx.Response(status_code, json={
            "Status": 0,
            "ErrorDetails": [{"ErrorCode": code, "ErrorMessage": message}],
            "Data": None,
            "InfoDtls": None,
        })

    @staticmethod
    def _ok(data: Dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, json={"Status": 1, "ErrorDetails": None, "Data": data, "InfoDtls": None})

    def _take_fault(self, endpoint: str) -> Optional[str]:
        queue = self._faults[endpoint]
        return queue.pop(0) if queue else None

    def _fault_response(self, action: str, request: httpx.Request) -> Optional[httpx.Response]:
        if action == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if action.startswith("http_"):
            return httpx.Response(int(action[5:]), text="upstream error")
        if action == "token_expired":
            return self._error("1005", "Invalid Token")
        if action == "reject":
            return self._error("2172", "The Buyer GSTIN is invalid")
        return None

    def _authorized(self, request: httpx.Request) -> bool:
        return request.headers.get("authtoken") in self.valid_tokens

    # ===========================================
    # Handlers
    # ===========================================

    def _handle_auth(self, request: httpx.Request) -> httpx.Response:
        self.calls.auth += 1
        action = self._take_fault("auth")
        if action:
            response = self._fault_response(action, request)
            if response is not None:
                return response

        if self.auth_failure:
            return httpx.Response(200, json={
                "Status": 0,
                "ErrorDetails": [self.auth_failure],
                "Data": None,
            })

        self._token_counter += 1
        token = f"token-{self._token_counter}"
        self.valid_tokens.add(token)
        data = {
            "ClientId": request.headers.get("client_id"),
            "UserName": json.loads(request.content).get("UserName"),
            "AuthToken": token,
            "Sek": "sek",
        }
        # Without an explicit expiry the client falls back to its own TTL
        if self.token_expiry:
            data["TokenExpiry"] = self.token_expiry
        return self._ok(data)

    def _handle_generate(self, request: httpx.Request) -> httpx.Response:
        self.calls.generate += 1
        body = json.loads(request.content)
        self.calls.bodies.append(body)
        self.calls.headers.append(dict(request.headers))

        action = self._take_fault("generate")
        if action == "timeout_after_register":
            if self._authorized(request):
                self._issue(body["DocDtls"]["No"], body["DocDtls"]["Dt"])
            raise httpx.ReadTimeout("timed out", request=request)
        if action:
            response = self._fault_response(action, request)
            if response is not None:
                return response

        if not self._authorized(request):
            return self._error("1005", "Invalid Token")

        key = (body["DocDtls"]["No"], body["DocDtls"]["Dt"])
        if key in self.issued:
            return self._error("2150", "Duplicate IRN")

        return self._ok(self._issue(*key).to_data())

    def _handle_cancel(self, request: httpx.Request) -> httpx.Response:
        self.calls.cancel += 1
        body = json.loads(request.content)
        self.calls.bodies.append(body)

        action = self._take_fault("cancel")
        if action == "window_expired":
            return self._error("2270", "The allowed cancellation time limit is crossed, you cannot cancel the IRN")
        if action:
            response = self._fault_response(action, request)
            if response is not None:
                return response

        if not self._authorized(request):
            return self._error("1005", "Invalid Token")

        record = next((r for r in self.issued.values() if r.irn == body.get("Irn")), None)
        if record is None:
            return self._error("2154", "Invalid IRN")
        if record.cancelled:
            return self._error("9999", "Invoice is cancelled")

        record.cancelled = True
        record.cancel_date = "2026-10-19 11:00:00"
        return self._ok({"Irn": record.irn, "CancelDate": record.cancel_date})

    def _handle_lookup(self, request: httpx.Request) -> httpx.Response:
        self.calls.lookup += 1
        action = self._take_fault("lookup")
        if action:
            response = self._fault_response(action, request)
            if response is not None:
                return response

        if not self._authorized(request):
            return self._error("1005", "Invalid Token")

        params = request.url.params
        record = self.issued.get((params.get("docnum"), params.get("docdate")))
        if record is None:
            return self._error("2283", "IRN details are not found")
        return self._ok(record.to_data())

    def _handle_webhook(self, request: httpx.Request) -> httpx.Response:
        hook = json.loads(request.content)
        self.webhooks.append(hook)
        if self.on_webhook:
            self.on_webhook(hook)
        return httpx.Response(self.webhook_status, json={"received": True})


def create_mock_irp() -> MockIRPServer:
    """Create a new MockIRPServer instance."""
    return MockIRPServer()
