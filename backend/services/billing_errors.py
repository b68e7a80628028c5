"""Billing domain errors.

Every error carries a stable machine-readable error_code and the HTTP status the
API layer answers with. server.py renders them as
{"detail": {"error_code": ..., "message": ..., **details}}.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for ledger and access-control failures."""
    error_code = "BILLING_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if status_code:
            self.status_code = status_code
        self.details = details or {}

    def to_detail(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message, **self.details}


class InsufficientFunds(BillingError):
    error_code = "INSUFFICIENT_FUNDS"
    status_code = 400

    def __init__(
        self,
        message: str,
        required: Optional[Decimal] = None,
        available: Optional[Decimal] = None,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        details = {}
        if required is not None:
            details["required"] = required
        if available is not None:
            details["available"] = available
        super().__init__(message, error_code=error_code, status_code=status_code, details=details)
        self.required = required
        self.available = available


class InvalidAmount(BillingError):
    error_code = "INVALID_AMOUNT"
    status_code = 400


class NotFound(BillingError):
    error_code = "NOT_FOUND"
    status_code = 404


class LimitReached(BillingError):
    error_code = "LIMIT_REACHED"
    status_code = 403


class NoPlan(BillingError):
    error_code = "NO_PLAN"
    status_code = 403


class FeatureLocked(BillingError):
    error_code = "FEATURE_LOCKED"
    status_code = 403


class SubscriptionInactive(BillingError):
    error_code = "SUBSCRIPTION_INACTIVE"
    status_code = 403


class GracePeriodExpired(BillingError):
    error_code = "GRACE_PERIOD_EXPIRED"
    status_code = 403


class PaymentPending(BillingError):
    error_code = "PAYMENT_PENDING"
    status_code = 403


class AlreadyActive(BillingError):
    error_code = "SUBSCRIPTION_ALREADY_ACTIVE"
    status_code = 409


class TransactionAbort(BillingError):
    """A unit of work failed after writes were attempted."""
    error_code = "TRANSACTION_ABORTED"
    status_code = 500
