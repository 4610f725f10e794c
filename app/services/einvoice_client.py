"""
GST Invoice Admin - NIC IRP E-Invoice API Client

Integration with the GST Invoice Registration Portal (IRP).

API Endpoints:
- Sandbox: https://einv-apisandbox.nic.in
- Production: https://einv-api.nic.in (tenant specific GSP URL)

Features:
- IRN generation (POST /eicore/v1.03/Invoice)
- IRN cancellation (POST /eicore/v1.03/Invoice/Cancel)
- IRN lookup by document details, for reconciliation
- Connection test (forced token exchange)

Every call takes a rate-limit slot and the current auth token. An
authentication rejection (HTTP 401 or IRP error 1005) invalidates the token
and the call is retried exactly once. Nothing here touches the database.
"""

import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from app.config import settings as app_settings
from app.schemas.einvoice import GSTSettings
from app.services.gst_token_manager import AuthToken, GSTTokenManager
from app.services.rate_limiter import RateLimiter
from app.utils.error_handling import (
    CancellationWindowExpiredException,
    GSTAuthenticationException,
    PermanentRemoteException,
    TransientNetworkException,
)

logger = logging.getLogger(__name__)


# IRP error codes the core reacts to
ERROR_INVALID_TOKEN = "1005"
ERROR_DUPLICATE_IRN = "2150"
ERROR_CANCEL_WINDOW_EXPIRED = "2270"

# IRP cancellation reason codes
CANCEL_REASON_CODES = {
    "duplicate": "1",
    "data_entry_mistake": "2",
    "order_cancelled": "3",
    "other": "4",
}


# ===========================================
# PYDANTIC MODELS FOR IRP API
# ===========================================

class ErrorDetail(BaseModel):
    """One entry of the IRP ErrorDetails list."""
    error_code: str
    error_message: str
    error_source: Optional[str] = None


class SubmissionResult(BaseModel):
    """Response from IRN generation."""
    status: int
    irn: Optional[str] = None
    ack_no: Optional[str] = None
    ack_date: Optional[str] = None
    qr_code_url: Optional[str] = None
    signed_invoice: Optional[str] = None
    signed_qr_code: Optional[str] = None
    error_details: List[ErrorDetail] = Field(default_factory=list)
    raw_response: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status == 1 and bool(self.irn)

    @property
    def duplicate(self) -> bool:
        """The IRP already holds an IRN for this document."""
        return self.status != 1 and any(e.error_code == ERROR_DUPLICATE_IRN for e in self.error_details)


class CancellationResult(BaseModel):
    """Response from IRN cancellation."""
    status: int
    irn: Optional[str] = None
    cancel_date: Optional[str] = None
    error_details: List[ErrorDetail] = Field(default_factory=list)
    raw_response: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status == 1


class IRNLookupResult(BaseModel):
    """Response from IRN lookup by document details."""
    found: bool
    irn: Optional[str] = None
    ack_no: Optional[str] = None
    ack_date: Optional[str] = None
    qr_code_url: Optional[str] = None
    signed_invoice: Optional[str] = None
    signed_qr_code: Optional[str] = None
    error_details: List[ErrorDetail] = Field(default_factory=list)
    raw_response: Optional[Dict[str, Any]] = None


class ConnectionResult(BaseModel):
    """Connection test result."""
    success: bool
    message: str


def format_errors(errors: List[ErrorDetail]) -> str:
    return "; ".join(f"{e.error_code}: {e.error_message}" for e in errors)


def cancel_reason_code(reason: str) -> str:
    """Map a reason name (or an IRP code 1-4) to the IRP CnlRsn code."""
    key = reason.strip().lower().replace(" ", "_")
    if key in CANCEL_REASON_CODES:
        return CANCEL_REASON_CODES[key]
    if key in CANCEL_REASON_CODES.values():
        return key
    return CANCEL_REASON_CODES["other"]


# ===========================================
# IRP API CLIENT
# ===========================================

class EInvoiceApiClient:
    """
    Client for interacting with the NIC e-invoice (IRP) API.

    Handles:
    - IRN generation
    - IRN cancellation
    - IRN lookup by document
    - Connection test
    """

    # API Endpoints
    ENDPOINTS = {
        "generate": "/eicore/v1.03/Invoice",
        "cancel": "/eicore/v1.03/Invoice/Cancel",
        "irn_by_doc": "/eicore/v1.03/Invoice/irnbydocdetails",
        "auth": GSTTokenManager.AUTH_ENDPOINT,
    }

    def __init__(
        self,
        token_manager: GSTTokenManager,
        rate_limiter: RateLimiter,
        max_wait_seconds: Optional[float] = None,
    ):
        """
        Initialize IRP API client.

        Args:
            token_manager: shared auth token owner
            rate_limiter: shared outbound throttle
            max_wait_seconds: longest a call may wait for a rate-limit slot
        """
        self.token_manager = token_manager
        self.rate_limiter = rate_limiter
        self.max_wait_seconds = (
            max_wait_seconds if max_wait_seconds is not None
            else app_settings.gst_rate_limit_max_wait_seconds
        )

    def _get_headers(self, gst: GSTSettings, token: AuthToken) -> Dict[str, str]:
        """Get API request headers. Custom headers never override protocol headers."""
        headers: Dict[str, str] = dict(gst.custom_headers)
        headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
            "client_id": gst.client_id,
            "client_secret": gst.client_secret,
            "user_name": gst.api_username,
            "gstin": gst.company_gstin,
            "authtoken": token.value,
        })
        return headers

    @staticmethod
    def _parse_errors(data: Dict[str, Any]) -> List[ErrorDetail]:
        return [
            ErrorDetail(
                error_code=str(e.get("ErrorCode", "")),
                error_message=str(e.get("ErrorMessage", "")),
                error_source=e.get("ErrorSource"),
            )
            for e in (data.get("ErrorDetails") or [])
            if isinstance(e, dict)
        ]

    @staticmethod
    def _parse_data(data: Dict[str, Any]) -> Dict[str, Any]:
        payload = data.get("Data")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError:
                return {}
        return payload if isinstance(payload, dict) else {}

    def _is_token_rejection(self, status_code: int, data: Optional[Dict[str, Any]]) -> bool:
        if status_code == 401:
            return True
        if data and data.get("Status") != 1:
            return any(e.error_code == ERROR_INVALID_TOKEN for e in self._parse_errors(data))
        return False

    async def _send(
        self,
        gst: GSTSettings,
        token: AuthToken,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Optional[Dict[str, Any]]]:
        """
        Make one HTTP request to the IRP.

        Returns:
            Tuple of (http_status, parsed_body or None for 401)
        """
        url = f"{gst.api_base_url}{endpoint}"
        headers = self._get_headers(gst, token)

        try:
            async with httpx.AsyncClient(timeout=gst.request_timeout) as client:
                if method.upper() == "GET":
                    response = await client.get(url, headers=headers, params=params)
                else:
                    response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"GST IRP timeout on {endpoint} after {gst.request_timeout}s")
            raise TransientNetworkException(
                f"request timeout - IRP did not respond within {gst.request_timeout}s",
                original_error=e,
            )
        except httpx.RequestError as e:
            logger.warning(f"GST IRP network error on {endpoint}: {e}")
            raise TransientNetworkException(f"network error: {e}", original_error=e)

        if response.status_code == 401:
            return 401, None

        if response.status_code >= 500:
            raise TransientNetworkException(
                f"HTTP {response.status_code} from {endpoint}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            if response.status_code >= 400:
                raise PermanentRemoteException(
                    f"HTTP {response.status_code} - {response.text[:200]}",
                    status_code=response.status_code,
                )
            raise TransientNetworkException("invalid JSON response from IRP", original_error=e)

        if not isinstance(data, dict) or "Status" not in data:
            if response.status_code >= 400:
                raise PermanentRemoteException(
                    f"HTTP {response.status_code} - {str(data)[:200]}",
                    status_code=response.status_code,
                )
            raise TransientNetworkException("unrecognised response body from IRP")

        return response.status_code, data

    async def _call(
        self,
        gst: GSTSettings,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Rate-limited, authenticated call with one retry on token rejection."""
        for attempt in (1, 2):
            await self.rate_limiter.acquire_slot(gst.rate_limit_requests, self.max_wait_seconds)
            token = await self.token_manager.acquire(gst)

            status_code, data = await self._send(gst, token, method, endpoint, payload, params)

            if not self._is_token_rejection(status_code, data):
                return data

            self.token_manager.invalidate(token)
            if attempt == 1:
                logger.info(f"GST IRP rejected auth token on {endpoint}, refreshing and retrying once")
                continue

            errors = self._parse_errors(data) if data else []
            raise GSTAuthenticationException(
                format_errors(errors) or "token rejected after refresh",
                error_details=[e.model_dump() for e in errors],
            )

        raise AssertionError("unreachable")

    # ===========================================
    # OPERATIONS
    # ===========================================

    @staticmethod
    def build_cancel_payload(irn: str, reason: str, remarks: Optional[str] = None) -> Dict[str, Any]:
        """IRP cancellation request body."""
        return {
            "Irn": irn,
            "CnlRsn": cancel_reason_code(reason),
            "CnlRem": (remarks or reason)[:100],
        }

    async def test_connection(self, gst: GSTSettings) -> ConnectionResult:
        """Force a token exchange. Never touches invoices."""
        try:
            await self.token_manager.acquire(gst, force_refresh=True)
        except (GSTAuthenticationException, TransientNetworkException) as e:
            return ConnectionResult(success=False, message=e.message)
        return ConnectionResult(
            success=True,
            message="GST API connection successful! Authentication token received.",
        )

    async def submit(self, gst: GSTSettings, payload: Dict[str, Any]) -> SubmissionResult:
        """
        Submit an invoice payload for IRN generation.

        Returns a result with status 1 and the IRN on acceptance, or the
        IRP ErrorDetails otherwise.
        """
        doc_no = (payload.get("DocDtls") or {}).get("No")
        logger.info(f"Submitting invoice {doc_no} to GST IRP")

        data = await self._call(gst, "POST", self.ENDPOINTS["generate"], payload=payload)
        body = self._parse_data(data)

        result = SubmissionResult(
            status=int(data.get("Status") or 0),
            irn=body.get("Irn"),
            ack_no=str(body["AckNo"]) if body.get("AckNo") is not None else None,
            ack_date=body.get("AckDt"),
            qr_code_url=body.get("QRCodeUrl"),
            signed_invoice=body.get("SignedInvoice"),
            signed_qr_code=body.get("SignedQRCode"),
            error_details=self._parse_errors(data),
            raw_response=data,
        )

        if result.success:
            logger.info(f"IRN generated for invoice {doc_no}: {result.irn}")
        else:
            logger.warning(f"IRP rejected invoice {doc_no}: {format_errors(result.error_details)}")
        return result

    async def cancel(
        self,
        gst: GSTSettings,
        irn: str,
        reason: str,
        remarks: Optional[str] = None,
    ) -> CancellationResult:
        """
        Cancel an IRN.

        Raises:
            CancellationWindowExpiredException: the IRP reports the
                cancellation time limit has passed (error 2270)
        """
        payload = self.build_cancel_payload(irn, reason, remarks)
        logger.info(f"Cancelling IRN {irn} (reason {payload['CnlRsn']})")

        data = await self._call(gst, "POST", self.ENDPOINTS["cancel"], payload=payload)
        body = self._parse_data(data)
        errors = self._parse_errors(data)

        if data.get("Status") != 1 and any(e.error_code == ERROR_CANCEL_WINDOW_EXPIRED for e in errors):
            logger.warning(f"Cancellation window expired for IRN {irn}")
            raise CancellationWindowExpiredException(irn, [e.model_dump() for e in errors])

        return CancellationResult(
            status=int(data.get("Status") or 0),
            irn=body.get("Irn", irn),
            cancel_date=body.get("CancelDate"),
            error_details=errors,
            raw_response=data,
        )

    async def get_irn_by_document(
        self,
        gst: GSTSettings,
        doc_no: str,
        doc_date: date,
        doc_type: str = "INV",
    ) -> IRNLookupResult:
        """Look up an IRN by document type, number and date."""
        params = {
            "doctype": doc_type,
            "docnum": doc_no,
            "docdate": doc_date.strftime("%d/%m/%Y"),
        }
        logger.info(f"Looking up IRN for {doc_type} {doc_no} dated {params['docdate']}")

        data = await self._call(gst, "GET", self.ENDPOINTS["irn_by_doc"], params=params)
        body = self._parse_data(data)

        if data.get("Status") == 1 and body.get("Irn"):
            return IRNLookupResult(
                found=True,
                irn=body["Irn"],
                ack_no=str(body["AckNo"]) if body.get("AckNo") is not None else None,
                ack_date=body.get("AckDt"),
                qr_code_url=body.get("QRCodeUrl"),
                signed_invoice=body.get("SignedInvoice"),
                signed_qr_code=body.get("SignedQRCode"),
                raw_response=data,
            )
        return IRNLookupResult(found=False, error_details=self._parse_errors(data), raw_response=data)
