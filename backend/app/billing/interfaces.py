"""Collaborator protocols used by the billing engine."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

from .models import (
    Account,
    AccountChanges,
    BillingAuditEvent,
    PlanKey,
    ProviderCustomer,
    ProviderPaymentIntent,
    ProviderPrice,
    ProviderProduct,
    ProviderSetupIntent,
    ProviderSubscription,
)


class AccountRepository(Protocol):
    """Persistence operations for per-user billing state."""

    def get_account_by_user_id(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_provider_customer_id(self, customer_id: str) -> Optional[Account]:
        ...

    def update_account_fields(
        self,
        account_id: str,
        changes: AccountChanges,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[Account]:
        """Apply ``changes``; return ``None`` when ``expected_version`` no longer matches."""

    def mark_trial_used(self, account_id: str) -> Optional[Account]:
        ...


class PaymentProvider(Protocol):
    """External subscription billing provider."""

    def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        ...

    def create_customer(
        self, *, email: str, name: Optional[str], metadata: Mapping[str, str]
    ) -> ProviderCustomer:
        ...

    def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        ...

    def find_product(self, name: str) -> Optional[ProviderProduct]:
        ...

    def create_product(self, *, name: str, metadata: Mapping[str, str]) -> ProviderProduct:
        ...

    def list_recurring_prices(self, product_id: str) -> Sequence[ProviderPrice]:
        ...

    def create_recurring_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: str,
        metadata: Mapping[str, str],
    ) -> ProviderPrice:
        ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        trial_period_days: Optional[int] = None,
    ) -> ProviderSubscription:
        ...

    def change_subscription_price(
        self,
        subscription_id: str,
        *,
        item_id: str,
        price_id: str,
        metadata: Mapping[str, str],
    ) -> ProviderSubscription:
        """Swap the first item to ``price_id`` with prorations and clear pending cancellation."""

    def cancel_subscription(self, subscription_id: str) -> None:
        ...

    def list_subscriptions(self, customer_id: str) -> Sequence[ProviderSubscription]:
        """Most recent subscriptions of ``customer_id`` in every status."""

    def set_cancel_at_period_end(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> ProviderSubscription:
        ...

    def retrieve_product(self, product_id: str) -> ProviderProduct:
        ...

    def create_setup_intent(
        self, customer_id: str, *, metadata: Mapping[str, str]
    ) -> ProviderSetupIntent:
        ...

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: Optional[str],
        metadata: Mapping[str, str],
    ) -> ProviderPaymentIntent:
        ...

    def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
        ...

    def update_payment_intent_metadata(
        self, payment_intent_id: str, metadata: Mapping[str, str]
    ) -> ProviderPaymentIntent:
        ...

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify ``payload`` against the signing secret and return the decoded event."""


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def send_downgrade_notice(self, email: str, previous_plan: PlanKey) -> None:
        ...

    def send_reactivation_notice(self, email: str, plan: PlanKey) -> None:
        ...

    def send_credits_purchased_notice(
        self, email: str, quantity: int, total: Decimal, new_balance: int, currency: str = "usd"
    ) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


__all__ = ["AccountRepository", "BillingEventLogger", "BillingNotifier", "PaymentProvider"]
