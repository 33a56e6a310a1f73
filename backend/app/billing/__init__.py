"""Billing domain package reconciling plan state with the payment provider."""

from .exceptions import (
    AccountNotFoundError,
    BillingError,
    ConcurrentUpdateError,
    PaymentNotFoundError,
    PlanChangeRejected,
    ProviderConfigurationError,
    ProviderError,
    SubAccountNotFoundError,
    TopupRejected,
    WebhookVerificationError,
)
from .interfaces import AccountRepository, BillingEventLogger, BillingNotifier, PaymentProvider
from .models import (
    Account,
    AccountChanges,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingInterval,
    CancellationResult,
    IntentKind,
    PlanChangeOutcome,
    PlanChangeResult,
    PlanKey,
    PlanSyncResult,
    ProviderEvent,
    ProviderEventType,
    ReactivationResult,
    SubscriptionStatus,
    WebhookOutcome,
    WebhookResult,
)

__all__ = [
    "Account",
    "AccountChanges",
    "AccountNotFoundError",
    "AccountRepository",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingInterval",
    "BillingNotifier",
    "CancellationResult",
    "ConcurrentUpdateError",
    "IntentKind",
    "PaymentNotFoundError",
    "PaymentProvider",
    "PlanChangeOutcome",
    "PlanChangeRejected",
    "PlanChangeResult",
    "PlanKey",
    "PlanSyncResult",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderEvent",
    "ProviderEventType",
    "ReactivationResult",
    "SubAccountNotFoundError",
    "SubscriptionStatus",
    "TopupRejected",
    "WebhookOutcome",
    "WebhookResult",
    "WebhookVerificationError",
]
