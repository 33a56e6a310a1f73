"""Exceptions raised by the billing engine."""
from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for billing failures surfaced to callers."""


class PlanChangeRejected(BillingError, ValueError):
    """The requested plan or billing interval cannot be purchased."""


class TopupRejected(BillingError, ValueError):
    """A prepaid credit purchase was requested with invalid parameters."""


class AccountNotFoundError(BillingError, LookupError):
    """No account exists for the given identifier."""


class SubAccountNotFoundError(BillingError, LookupError):
    """No business exists for the given identifier."""


class PaymentNotFoundError(BillingError, LookupError):
    """No payment intent belonging to the caller exists for the given identifier."""


class ProviderError(BillingError):
    """A call to the billing provider failed."""

    def __init__(self, message: str, *, retryable: bool = True, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.code = code


class ProviderConfigurationError(BillingError):
    """The provider integration is misconfigured or returned an unusable object."""


class WebhookVerificationError(BillingError):
    """An inbound webhook failed signature verification or could not be parsed."""


class ConcurrentUpdateError(BillingError):
    """An account kept changing underneath a compare-and-set update."""


__all__ = [
    "AccountNotFoundError",
    "BillingError",
    "ConcurrentUpdateError",
    "PaymentNotFoundError",
    "PlanChangeRejected",
    "ProviderConfigurationError",
    "ProviderError",
    "SubAccountNotFoundError",
    "TopupRejected",
    "WebhookVerificationError",
]
