"""
Error Handling Module for GST Invoice Admin

This module provides centralized error handling with:
- Custom exception hierarchy for the e-invoicing core
- Standardized error responses
- Error logging and tracking
- GSTIN validation
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

# Configure logging
logger = logging.getLogger("gst_invoice_admin.errors")


GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_GSTIN = "INVALID_GSTIN"
    INVOICE_NOT_READY = "INVOICE_NOT_READY"

    # Authentication Errors
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    ALREADY_SUBMITTED = "ALREADY_SUBMITTED"
    SUBMISSION_IN_PROGRESS = "SUBMISSION_IN_PROGRESS"
    INVALID_STATE = "INVALID_STATE"

    # Business Logic Errors (422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    CANCELLATION_WINDOW_EXPIRED = "CANCELLATION_WINDOW_EXPIRED"

    # Rate Limiting (429)
    RATE_LIMITED = "RATE_LIMITED"

    # External Service Errors (502/503)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    GST_AUTH_FAILED = "GST_AUTH_FAILED"
    GST_NETWORK_ERROR = "GST_NETWORK_ERROR"
    GST_REMOTE_REJECTED = "GST_REMOTE_REJECTED"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Configuration Exceptions
# ============================================================================

class ConfigurationException(AppException):
    """GST settings are missing or invalid; no submission can proceed."""

    def __init__(
        self,
        message: str,
        missing_fields: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if missing_fields:
            _details["missing_fields"] = missing_fields
        super().__init__(
            code=ErrorCode.CONFIGURATION_ERROR,
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=_details,
        )


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class InvalidGSTINException(ValidationException):
    """Invalid GST Identification Number"""

    def __init__(self, gstin: str, field: str = "company_gstin", message: Optional[str] = None):
        super().__init__(
            message=message or f"Invalid GSTIN format: {gstin}. Expected 15 characters, e.g. 27AABCU9603R1ZX.",
            field=field,
            code=ErrorCode.INVALID_GSTIN,
            details={"provided_gstin": gstin, "expected_pattern": GSTIN_PATTERN.pattern},
        )


class InvoiceNotReadyException(ValidationException):
    """Invoice data is incomplete for e-invoicing"""

    def __init__(self, invoice_id: int, errors: List[str]):
        super().__init__(
            message=f"Invoice {invoice_id} is not ready for e-invoicing: {'; '.join(errors)}",
            code=ErrorCode.INVOICE_NOT_READY,
            details={"invoice_id": invoice_id, "errors": errors},
        )
        self.errors = errors


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Any] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id is not None:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id is not None else None},
        )


class InvoiceNotFoundException(NotFoundException):
    """Invoice not found"""

    def __init__(self, invoice_id: int):
        super().__init__(
            resource_type="Invoice",
            resource_id=invoice_id,
            code=ErrorCode.INVOICE_NOT_FOUND,
        )


class ConflictException(AppException):
    """Resource conflict exception"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class AlreadySubmittedException(ConflictException):
    """Idempotency guard: the invoice already carries an IRN"""

    def __init__(self, invoice_id: int, irn: Optional[str] = None):
        details: Dict[str, Any] = {"invoice_id": invoice_id}
        if irn:
            details["irn"] = irn
        super().__init__(
            message=f"Invoice {invoice_id} has already been submitted to the IRP",
            resource_type="Invoice",
            code=ErrorCode.ALREADY_SUBMITTED,
            details=details,
        )
        self.irn = irn


class SubmissionInProgressException(ConflictException):
    """Another request holds the submission claim for this invoice"""

    def __init__(self, invoice_id: int):
        super().__init__(
            message=f"Invoice {invoice_id} is being submitted by another request. Try again shortly.",
            resource_type="Invoice",
            code=ErrorCode.SUBMISSION_IN_PROGRESS,
            details={"invoice_id": invoice_id, "retryable": True},
        )


class InvalidStateException(ConflictException):
    """Operation not allowed from the invoice's current status"""

    def __init__(self, invoice_id: int, current_status: str, operation: str, allowed: Optional[List[str]] = None):
        details: Dict[str, Any] = {
            "invoice_id": invoice_id,
            "current_status": current_status,
            "operation": operation,
        }
        if allowed:
            details["allowed_statuses"] = allowed
        super().__init__(
            message=f"Cannot {operation} invoice {invoice_id} in status '{current_status}'",
            resource_type="Invoice",
            code=ErrorCode.INVALID_STATE,
            details=details,
        )


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation exception"""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=_details,
        )


class CancellationWindowExpiredException(BusinessRuleException):
    """The IRP refused cancellation because the allowed window has passed"""

    failure_kind = "permanent"

    def __init__(self, irn: str, error_details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            message=f"IRN {irn} can no longer be cancelled: the cancellation time limit has passed",
            rule="CANCELLATION_WINDOW",
            code=ErrorCode.CANCELLATION_WINDOW_EXPIRED,
            details={"irn": irn, "error_details": error_details or []},
        )
        self.error_details = error_details or []


# ============================================================================
# External Service Exceptions
# ============================================================================

class ExternalServiceException(AppException):
    """External service error exception"""

    failure_kind = "transient"

    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        _details["service"] = service_name
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=_details,
            original_error=original_error,
        )


class GSTAuthenticationException(ExternalServiceException):
    """The IRP rejected our credentials or token"""

    failure_kind = "transient"

    def __init__(self, message: str, error_details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            service_name="GST IRP",
            message=f"GST authentication failed: {message}",
            code=ErrorCode.GST_AUTH_FAILED,
            details={"error_details": error_details or []},
        )
        self.error_details = error_details or []


class TransientNetworkException(ExternalServiceException):
    """Timeout, connection failure or 5xx from the IRP"""

    failure_kind = "transient"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if status_code is not None:
            details["upstream_status"] = status_code
        super().__init__(
            service_name="GST IRP",
            message=f"GST IRP unavailable: {message}",
            code=ErrorCode.GST_NETWORK_ERROR,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            original_error=original_error,
            details=details,
        )
        self.upstream_status = status_code


class PermanentRemoteException(ExternalServiceException):
    """The IRP rejected the request itself; resending it unchanged will fail again"""

    failure_kind = "permanent"

    def __init__(
        self,
        message: str,
        error_details: Optional[List[Dict[str, Any]]] = None,
        status_code: Optional[int] = None,
    ):
        details: Dict[str, Any] = {"error_details": error_details or []}
        if status_code is not None:
            details["upstream_status"] = status_code
        super().__init__(
            service_name="GST IRP",
            message=f"GST IRP rejected the request: {message}",
            code=ErrorCode.GST_REMOTE_REJECTED,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )
        self.error_details = error_details or []


# ============================================================================
# Rate Limiting Exception
# ============================================================================

class RateLimitException(AppException):
    """Rate limit exceeded"""

    failure_kind = "transient"

    def __init__(self, retry_after: int = 60):
        super().__init__(
            code=ErrorCode.RATE_LIMITED,
            message=f"GST API rate limit exceeded. Please try again in {retry_after} seconds.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"retry_after_seconds": retry_after},
        )
        self.retry_after = retry_after


# ============================================================================
# Exception Handlers
# ============================================================================

# Framework HTTP errors mapped onto application codes
HTTP_STATUS_CODES: Dict[int, ErrorCode] = {
    400: ErrorCode.INVALID_INPUT,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.INVALID_INPUT,
    409: ErrorCode.RESOURCE_CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMITED,
}


def _request_context(request: Request) -> Dict[str, Any]:
    return {"path": request.url.path, "method": request.method}


def error_response(exc: AppException) -> JSONResponse:
    """
    Render an AppException as {success, message, detail[, errors]}.

    IRP error lists and invoice readiness problems are lifted to the
    top-level `errors` key, where clients also find them on a failed
    submission outcome. Rate-limit refusals carry Retry-After.
    """
    content: Dict[str, Any] = {
        "success": False,
        "message": exc.message,
        "detail": exc.to_dict(),
    }
    errors = exc.details.get("error_details") or exc.details.get("errors")
    if errors:
        content["errors"] = errors

    headers = None
    if isinstance(exc, RateLimitException):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def _classify_database_error(exc: SQLAlchemyError) -> Tuple[ErrorCode, str, int]:
    if isinstance(exc, IntegrityError):
        reason = str(exc.orig).lower() if exc.orig else ""
        if "unique" in reason or "duplicate" in reason:
            return ErrorCode.DUPLICATE_ENTRY, "A record with this value already exists", status.HTTP_409_CONFLICT
        return ErrorCode.DATA_INTEGRITY_ERROR, "Data integrity constraint violated", status.HTTP_500_INTERNAL_SERVER_ERROR
    if isinstance(exc, OperationalError):
        return ErrorCode.CONNECTION_ERROR, "Database unavailable", status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, DataError):
        return ErrorCode.DATABASE_ERROR, "Invalid data format for database", status.HTTP_422_UNPROCESSABLE_ENTITY
    return ErrorCode.DATABASE_ERROR, "A database error occurred", status.HTTP_500_INTERNAL_SERVER_ERROR


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.code.value} on {request.method} {request.url.path}: {exc.message}",
        extra={**_request_context(request), "code": exc.code.value, "details": exc.details},
        exc_info=exc.original_error,
    )
    return error_response(exc)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(
        f"HTTP {exc.status_code} on {request.method} {request.url.path}: {message}",
        extra=_request_context(request),
    )
    return error_response(AppException(
        code=HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR),
        message=message,
        status_code=exc.status_code,
    ))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body or path/query parameters failed schema validation."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"Request validation failed on {request.url.path}: {len(errors)} error(s)",
        extra={**_request_context(request), "errors": errors},
    )
    return error_response(ValidationException("Request validation failed", details={"errors": errors}))


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    code, message, status_code = _classify_database_error(exc)
    logger.error(
        f"Database error on {request.method} {request.url.path}: {type(exc).__name__}",
        extra=_request_context(request),
        exc_info=exc,
    )
    return error_response(AppException(code=code, message=message, status_code=status_code))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.critical(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        extra=_request_context(request),
        exc_info=exc,
    )
    # Internal details never reach the client
    return error_response(AppException(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
    ))


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the handlers; every error body has the {success, message, detail} shape."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


# ============================================================================
# Utility Functions
# ============================================================================

def validate_gstin(gstin: str, field: str = "company_gstin") -> str:
    """Validate and normalise a GSTIN"""
    cleaned = (gstin or "").strip().upper()
    if not GSTIN_PATTERN.match(cleaned):
        raise InvalidGSTINException(gstin, field=field)
    return cleaned


def is_valid_gstin(gstin: Optional[str]) -> bool:
    return bool(gstin) and bool(GSTIN_PATTERN.match(gstin.strip().upper()))


# Export all exceptions for easy importing
__all__ = [
    # Base
    "AppException",
    "ErrorCode",
    "GSTIN_PATTERN",

    # Configuration
    "ConfigurationException",

    # Validation
    "ValidationException",
    "InvalidGSTINException",
    "InvoiceNotReadyException",

    # Resource
    "NotFoundException",
    "InvoiceNotFoundException",
    "ConflictException",
    "AlreadySubmittedException",
    "SubmissionInProgressException",
    "InvalidStateException",

    # Business Logic
    "BusinessRuleException",
    "CancellationWindowExpiredException",

    # External Services
    "ExternalServiceException",
    "GSTAuthenticationException",
    "TransientNetworkException",
    "PermanentRemoteException",

    # Rate Limiting
    "RateLimitException",

    # Handlers
    "setup_exception_handlers",
    "error_response",

    # Utilities
    "validate_gstin",
    "is_valid_gstin",
]
