"""Shared in-memory fakes for the billing test suite."""
from __future__ import annotations

import itertools
import json
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from backend.app.billing.config import BillingConfig, load_billing_config
from backend.app.billing.exceptions import (
    ProviderError,
    SubAccountNotFoundError,
    WebhookVerificationError,
)
from backend.app.billing.interfaces import (
    AccountRepository,
    BillingEventLogger,
    BillingNotifier,
    PaymentProvider,
)
from backend.app.billing.models import (
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
    SubscriptionStatus,
)
from backend.app.billing.orchestrator import PlanChangeOrchestrator
from backend.app.billing.pricing import PriceResolver
from backend.app.billing.webhooks import WebhookProcessor
from backend.app.credits.ledger import CreditLedger
from backend.app.credits.models import CreditBalance, CreditKind

VALID_SIGNATURE = "t=1,v1=valid"


class InMemoryAccountRepository(AccountRepository):
    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self.before_update: Optional[Callable[[str], None]] = None
        self.update_calls = 0
        self._lock = threading.Lock()

    def add(self, account_id: str = "user-1", **fields: Any) -> Account:
        fields.setdefault("email", f"{account_id}@example.com")
        account = Account(account_id=account_id, **fields)
        self.accounts[account_id] = account
        return account

    def get_account_by_user_id(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    def get_account_by_provider_customer_id(self, customer_id: str) -> Optional[Account]:
        for account in self.accounts.values():
            if account.provider_customer_id == customer_id:
                return account
        return None

    def update_account_fields(
        self,
        account_id: str,
        changes: AccountChanges,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[Account]:
        hook, self.before_update = self.before_update, None
        if hook is not None:
            hook(account_id)
        with self._lock:
            self.update_calls += 1
            current = self.accounts.get(account_id)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                return None
            updated = current.model_copy(
                update={
                    **changes.as_fields(),
                    "version": current.version + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self.accounts[account_id] = updated
            return updated

    def mark_trial_used(self, account_id: str) -> Optional[Account]:
        with self._lock:
            current = self.accounts.get(account_id)
            if current is None:
                return None
            updated = current.model_copy(update={"trial_used": True, "version": current.version + 1})
            self.accounts[account_id] = updated
            return updated


class InMemoryCreditLedger(CreditLedger):
    def __init__(self) -> None:
        self.owners: Dict[int, str] = {}
        self.balances: Dict[Tuple[int, CreditKind], int] = {}
        self.items: List[Tuple[int, CreditKind, datetime]] = []
        self._lock = threading.Lock()

    def add_business(
        self,
        business_id: int,
        *,
        owner_id: str = "user-1",
        invoice_credits: int = 0,
        expense_credits: int = 0,
    ) -> None:
        self.owners[business_id] = owner_id
        self.balances[(business_id, CreditKind.INVOICE)] = invoice_credits
        self.balances[(business_id, CreditKind.EXPENSE)] = expense_credits

    def add_items(self, business_id: int, kind: CreditKind, count: int, created_at: datetime) -> None:
        self.items.extend((business_id, kind, created_at) for _ in range(count))

    def balance(self, business_id: int, kind: CreditKind = CreditKind.INVOICE) -> int:
        return self.balances.get((business_id, kind), 0)

    def sub_account_exists(self, sub_account_id: int, *, owner_id: Optional[str] = None) -> bool:
        owner = self.owners.get(sub_account_id)
        if owner is None:
            return False
        return owner_id is None or owner == owner_id

    def get_balance(self, sub_account_id: int, kind: CreditKind) -> CreditBalance:
        if sub_account_id not in self.owners:
            raise SubAccountNotFoundError(f"Business {sub_account_id} not found")
        return CreditBalance(sub_account_id=sub_account_id, kind=kind, balance=self.balance(sub_account_id, kind))

    def decrement_if_positive(self, sub_account_id: int, kind: CreditKind) -> Optional[int]:
        with self._lock:
            if sub_account_id not in self.owners:
                return None
            current = self.balances.get((sub_account_id, kind), 0)
            if current <= 0:
                return None
            self.balances[(sub_account_id, kind)] = current - 1
            return current - 1

    def increment(self, sub_account_id: int, kind: CreditKind, quantity: int) -> Optional[int]:
        with self._lock:
            if sub_account_id not in self.owners:
                return None
            new_balance = self.balances.get((sub_account_id, kind), 0) + quantity
            self.balances[(sub_account_id, kind)] = new_balance
            return new_balance

    def count_items_created(
        self, sub_account_id: int, kind: CreditKind, start: datetime, end: datetime
    ) -> int:
        return sum(
            1
            for business_id, item_kind, created_at in self.items
            if business_id == sub_account_id and item_kind == kind and start <= created_at < end
        )


class FakePaymentProvider(PaymentProvider):
    def __init__(self) -> None:
        self.customers: Dict[str, ProviderCustomer] = {}
        self.products: Dict[str, ProviderProduct] = {}
        self.prices: List[ProviderPrice] = []
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.payment_intents: Dict[str, ProviderPaymentIntent] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _record(self, _call: str, **params: Any) -> None:
        self.calls.append((_call, params))
        failure = self.failures.get(_call)
        if failure is not None:
            raise failure

    def calls_named(self, name: str) -> List[Dict[str, Any]]:
        return [params for call, params in self.calls if call == name]

    def add_customer(self, email: str, *, default_payment_method: Optional[str] = None) -> ProviderCustomer:
        customer = ProviderCustomer(
            id=self._next_id("cus"), email=email, default_payment_method=default_payment_method
        )
        self.customers[customer.id] = customer
        return customer

    def add_subscription(
        self,
        customer_id: str,
        status: SubscriptionStatus,
        *,
        plan: Optional[PlanKey] = PlanKey.PROFESSIONAL,
        price_id: str = "price_existing",
        product_id: Optional[str] = None,
        cancel_at_period_end: bool = False,
        current_period_end: Optional[datetime] = None,
    ) -> ProviderSubscription:
        subscription = ProviderSubscription(
            id=self._next_id("sub"),
            customer_id=customer_id,
            status=status,
            item_id=self._next_id("si"),
            price_id=price_id,
            product_id=product_id,
            metadata={"plan": plan.value} if plan is not None else {},
            cancel_at_period_end=cancel_at_period_end,
            current_period_end=current_period_end,
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def add_payment_intent(
        self,
        amount: int,
        metadata: Mapping[str, str],
        *,
        status: str = "succeeded",
        currency: str = "usd",
        customer_id: Optional[str] = None,
    ) -> ProviderPaymentIntent:
        intent = ProviderPaymentIntent(
            id=self._next_id("pi"),
            status=status,
            amount=amount,
            currency=currency,
            customer_id=customer_id,
            metadata=dict(metadata),
        )
        self.payment_intents[intent.id] = intent
        return intent

    def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        self._record("find_customer_by_email", email=email)
        for customer in self.customers.values():
            if customer.email == email:
                return customer
        return None

    def create_customer(
        self, *, email: str, name: Optional[str], metadata: Mapping[str, str]
    ) -> ProviderCustomer:
        self._record("create_customer", email=email, name=name, metadata=dict(metadata))
        return self.add_customer(email)

    def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        self._record("retrieve_customer", customer_id=customer_id)
        return self.customers[customer_id]

    def find_product(self, name: str) -> Optional[ProviderProduct]:
        self._record("find_product", name=name)
        return self.products.get(name)

    def create_product(self, *, name: str, metadata: Mapping[str, str]) -> ProviderProduct:
        self._record("create_product", name=name, metadata=dict(metadata))
        product = ProviderProduct(id=self._next_id("prod"), name=name)
        self.products[name] = product
        return product

    def list_recurring_prices(self, product_id: str) -> Sequence[ProviderPrice]:
        self._record("list_recurring_prices", product_id=product_id)
        return [price for price in self.prices if price.product_id == product_id]

    def create_recurring_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: str,
        metadata: Mapping[str, str],
    ) -> ProviderPrice:
        self._record(
            "create_recurring_price",
            product_id=product_id,
            unit_amount=unit_amount,
            currency=currency,
            interval=interval,
        )
        price = ProviderPrice(
            id=self._next_id("price"),
            product_id=product_id,
            unit_amount=unit_amount,
            currency=currency,
            interval=interval,
        )
        self.prices.append(price)
        return price

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        self._record("retrieve_subscription", subscription_id=subscription_id)
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise ProviderError("No such subscription", retryable=False, code="resource_missing")
        return subscription

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        trial_period_days: Optional[int] = None,
    ) -> ProviderSubscription:
        self._record(
            "create_subscription",
            customer_id=customer_id,
            price_id=price_id,
            metadata=dict(metadata),
            trial_period_days=trial_period_days,
        )
        subscription_id = self._next_id("sub")
        if trial_period_days:
            subscription = ProviderSubscription(
                id=subscription_id,
                customer_id=customer_id,
                status=SubscriptionStatus.TRIALING,
                item_id=self._next_id("si"),
                price_id=price_id,
                metadata=dict(metadata),
                setup_intent_client_secret=f"seti_secret_{subscription_id}",
            )
        else:
            subscription = ProviderSubscription(
                id=subscription_id,
                customer_id=customer_id,
                status=SubscriptionStatus.INCOMPLETE,
                item_id=self._next_id("si"),
                price_id=price_id,
                metadata=dict(metadata),
                payment_intent_client_secret=f"pi_secret_{subscription_id}",
            )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def change_subscription_price(
        self,
        subscription_id: str,
        *,
        item_id: str,
        price_id: str,
        metadata: Mapping[str, str],
    ) -> ProviderSubscription:
        self._record(
            "change_subscription_price",
            subscription_id=subscription_id,
            item_id=item_id,
            price_id=price_id,
            metadata=dict(metadata),
        )
        updated = self.subscriptions[subscription_id].model_copy(
            update={"price_id": price_id, "metadata": dict(metadata), "cancel_at_period_end": False}
        )
        self.subscriptions[subscription_id] = updated
        return updated

    def cancel_subscription(self, subscription_id: str) -> None:
        self._record("cancel_subscription", subscription_id=subscription_id)
        subscription = self.subscriptions[subscription_id]
        self.subscriptions[subscription_id] = subscription.model_copy(
            update={"status": SubscriptionStatus.CANCELED}
        )

    def list_subscriptions(self, customer_id: str) -> Sequence[ProviderSubscription]:
        self._record("list_subscriptions", customer_id=customer_id)
        return [sub for sub in self.subscriptions.values() if sub.customer_id == customer_id]

    def set_cancel_at_period_end(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> ProviderSubscription:
        self._record(
            "set_cancel_at_period_end",
            subscription_id=subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        updated = self.subscriptions[subscription_id].model_copy(
            update={"cancel_at_period_end": cancel_at_period_end}
        )
        self.subscriptions[subscription_id] = updated
        return updated

    def retrieve_product(self, product_id: str) -> ProviderProduct:
        self._record("retrieve_product", product_id=product_id)
        for product in self.products.values():
            if product.id == product_id:
                return product
        raise ProviderError("No such product", retryable=False, code="resource_missing")

    def create_setup_intent(
        self, customer_id: str, *, metadata: Mapping[str, str]
    ) -> ProviderSetupIntent:
        self._record("create_setup_intent", customer_id=customer_id, metadata=dict(metadata))
        intent_id = self._next_id("seti")
        return ProviderSetupIntent(id=intent_id, client_secret=f"{intent_id}_secret")

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: Optional[str],
        metadata: Mapping[str, str],
    ) -> ProviderPaymentIntent:
        self._record(
            "create_payment_intent",
            amount=amount,
            currency=currency,
            customer_id=customer_id,
            metadata=dict(metadata),
        )
        intent_id = self._next_id("pi")
        intent = ProviderPaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata),
        )
        self.payment_intents[intent.id] = intent
        return intent

    def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
        self._record("retrieve_payment_intent", payment_intent_id=payment_intent_id)
        intent = self.payment_intents.get(payment_intent_id)
        if intent is None:
            raise ProviderError("No such payment_intent", retryable=False, code="resource_missing")
        return intent

    def update_payment_intent_metadata(
        self, payment_intent_id: str, metadata: Mapping[str, str]
    ) -> ProviderPaymentIntent:
        self._record("update_payment_intent_metadata", payment_intent_id=payment_intent_id, metadata=dict(metadata))
        updated = self.payment_intents[payment_intent_id].model_copy(update={"metadata": dict(metadata)})
        self.payment_intents[payment_intent_id] = updated
        return updated

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        if signature_header != VALID_SIGNATURE:
            raise WebhookVerificationError("Invalid webhook signature")
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError("Malformed webhook payload") from exc


class FakeNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.downgrades: List[Tuple[str, PlanKey]] = []
        self.reactivations: List[Tuple[str, PlanKey]] = []
        self.credits_purchased: List[Tuple[str, int, Decimal, int, str]] = []

    def send_downgrade_notice(self, email: str, previous_plan: PlanKey) -> None:
        self.downgrades.append((email, previous_plan))

    def send_reactivation_notice(self, email: str, plan: PlanKey) -> None:
        self.reactivations.append((email, plan))

    def send_credits_purchased_notice(
        self, email: str, quantity: int, total: Decimal, new_balance: int, currency: str = "usd"
    ) -> None:
        self.credits_purchased.append((email, quantity, total, new_balance, currency))


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def billing_config() -> BillingConfig:
    return load_billing_config(
        env={
            "STRIPE_TEST_SECRET_KEY": "sk_test_123",
            "STRIPE_WEBHOOK_SECRET": "whsec_123",
            "BILLING_TRIAL_DAYS": "60",
        }
    )


@pytest.fixture
def repository() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def event_logger() -> FakeEventLogger:
    return FakeEventLogger()


@pytest.fixture
def orchestrator(repository, provider, notifier, event_logger, billing_config) -> PlanChangeOrchestrator:
    return PlanChangeOrchestrator(
        repository=repository,
        provider=provider,
        prices=PriceResolver(provider=provider, config=billing_config),
        event_logger=event_logger,
        config=billing_config,
        notifier=notifier,
    )


@pytest.fixture
def processor(repository, ledger, provider, notifier, event_logger) -> WebhookProcessor:
    return WebhookProcessor(
        repository=repository,
        ledger=ledger,
        provider=provider,
        notifier=notifier,
        event_logger=event_logger,
    )


def _subscription_payload(
    subscription_id: str = "sub_evt",
    *,
    customer: Optional[str] = "cus_evt",
    status: str = "active",
    metadata: Optional[Dict[str, str]] = None,
    cancel_at_period_end: bool = False,
    current_period_end: Optional[int] = 1767225600,
) -> Dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata if metadata is not None else {"plan": "professional"},
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": current_period_end,
        "items": {"data": [{"id": "si_evt", "price": {"id": "price_evt"}}]},
    }


def _event_payload(event_type: str, data_object: Dict[str, Any], event_id: str = "evt_1") -> Dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": {"object": data_object}}


@pytest.fixture
def subscription_payload() -> Callable[..., Dict[str, Any]]:
    return _subscription_payload


@pytest.fixture
def event_payload() -> Callable[..., Dict[str, Any]]:
    return _event_payload


@pytest.fixture
def webhook_body() -> Callable[..., bytes]:
    def build(event_type: str, data_object: Dict[str, Any], event_id: str = "evt_1") -> bytes:
        return json.dumps(_event_payload(event_type, data_object, event_id)).encode("utf-8")

    return build
