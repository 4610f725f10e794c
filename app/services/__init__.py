"""
GST Invoice Admin - Services Package

Business logic services.
"""

from app.services.gst_settings_service import GSTSettingsService
from app.services.gst_token_manager import AuthToken, GSTTokenManager
from app.services.rate_limiter import (
    RateLimiter,
    SlidingWindowRateLimiter,
    RedisRateLimiter,
    build_rate_limiter,
)
from app.services.einvoice_client import EInvoiceApiClient
from app.services.einvoice_log_service import EInvoiceLogService
from app.services.retry_policy import RetryDecision, RetryPolicy, classify_failure
from app.services.einvoice_service import EInvoiceService, build_einvoice_service

__all__ = [
    "GSTSettingsService",
    "AuthToken",
    "GSTTokenManager",
    "RateLimiter",
    "SlidingWindowRateLimiter",
    "RedisRateLimiter",
    "build_rate_limiter",
    "EInvoiceApiClient",
    "EInvoiceLogService",
    "RetryDecision",
    "RetryPolicy",
    "classify_failure",
    "EInvoiceService",
    "build_einvoice_service",
]
