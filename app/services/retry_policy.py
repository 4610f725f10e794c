"""
GST Invoice Admin - E-Invoice Retry Policy

Decides whether a failed IRP submission may be retried automatically by the
background sweep, and after how long. User-triggered retries do not consult
this policy.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.config import settings
from app.models.invoice import FailureKind
from app.utils.error_handling import AppException


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry decision."""
    should_retry: bool
    delay_seconds: int
    reason: str


class RetryPolicy:
    """
    Exponential backoff: base * 2^attempt, capped at max_delay.

    Permanent failures (the IRP rejected the document itself) are never
    retried, whatever budget is left.
    """

    def __init__(
        self,
        base_delay_seconds: Optional[int] = None,
        max_delay_seconds: Optional[int] = None,
    ):
        self.base_delay_seconds = (
            base_delay_seconds if base_delay_seconds is not None
            else settings.gst_retry_base_delay_seconds
        )
        self.max_delay_seconds = (
            max_delay_seconds if max_delay_seconds is not None
            else settings.gst_retry_max_delay_seconds
        )

    def backoff_delay(self, attempt: int) -> int:
        """Delay before automatic attempt number `attempt + 1`."""
        attempt = max(attempt, 0)
        # Cap the exponent so huge attempt counts stay cheap
        delay = self.base_delay_seconds * (2 ** min(attempt, 32))
        return int(min(delay, self.max_delay_seconds))

    def decide(
        self,
        attempt: int,
        max_attempts: int,
        failure_kind: Optional[FailureKind],
    ) -> RetryDecision:
        """
        Decide whether automatic attempt `attempt + 1` should happen.

        Args:
            attempt: automatic retries already made
            max_attempts: configured retry_attempts
            failure_kind: classification of the last failure
        """
        if failure_kind == FailureKind.PERMANENT:
            return RetryDecision(False, 0, "permanent failure, correct the invoice data first")

        if failure_kind is None:
            return RetryDecision(False, 0, "no recorded failure")

        if attempt >= max_attempts:
            return RetryDecision(False, 0, f"retry budget exhausted ({attempt}/{max_attempts})")

        return RetryDecision(True, self.backoff_delay(attempt), "transient failure")

    def is_due(
        self,
        attempt: int,
        max_attempts: int,
        failure_kind: Optional[FailureKind],
        last_attempt_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        """True when the sweep should retry this invoice now."""
        decision = self.decide(attempt, max_attempts, failure_kind)
        if not decision.should_retry:
            return False
        if last_attempt_at is None:
            return True
        return now >= last_attempt_at + timedelta(seconds=decision.delay_seconds)


def classify_failure(exc: BaseException) -> FailureKind:
    """
    Map an exception to transient or permanent.

    IRP exceptions carry a failure_kind attribute. Other application errors
    with a 4xx status are permanent. Anything else (network faults, bugs) is
    treated as transient so that reconciliation gets a chance to look.
    """
    kind = getattr(exc, "failure_kind", None)
    if kind:
        return FailureKind(kind)
    if isinstance(exc, AppException) and 400 <= exc.status_code < 500:
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT
