"""Stripe implementation of :class:`PaymentProvider`."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import stripe

from .config import BillingConfig
from .exceptions import ProviderConfigurationError, ProviderError, WebhookVerificationError
from .models import (
    ProviderCustomer,
    ProviderPaymentIntent,
    ProviderPrice,
    ProviderProduct,
    ProviderSetupIntent,
    ProviderSubscription,
    SubscriptionStatus,
    parse_timestamp,
    safe_metadata,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)
_SUBSCRIPTION_EXPAND = ["pending_setup_intent", "latest_invoice.payment_intent"]


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _id_of(value: Any) -> Optional[str]:
    """Return the id of an expandable field that may be a string or an object."""

    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _as_dict(value).get("id")


def _provider_error(exc: stripe.StripeError, action: str) -> ProviderError:
    retryable = isinstance(exc, _TRANSIENT_ERRORS)
    return ProviderError(
        f"Stripe {action} failed: {exc.user_message or exc}",
        retryable=retryable,
        code=getattr(exc, "code", None),
    )


def customer_from_stripe(obj: Any) -> ProviderCustomer:
    data = _as_dict(obj)
    invoice_settings = _as_dict(data.get("invoice_settings"))
    default_method = _id_of(invoice_settings.get("default_payment_method")) or _id_of(
        data.get("default_source")
    )
    return ProviderCustomer(id=data["id"], email=data.get("email"), default_payment_method=default_method)


def price_from_stripe(obj: Any) -> ProviderPrice:
    data = _as_dict(obj)
    recurring = _as_dict(data.get("recurring"))
    return ProviderPrice(
        id=data["id"],
        product_id=_id_of(data.get("product")),
        unit_amount=data.get("unit_amount"),
        currency=data.get("currency") or "usd",
        interval=recurring.get("interval"),
        active=bool(data.get("active", True)),
    )


def subscription_from_stripe(obj: Any) -> ProviderSubscription:
    """Normalize a Stripe subscription, including expanded intents when present."""

    data = _as_dict(obj)
    items = _as_dict(data.get("items")).get("data") or []
    first_item = _as_dict(items[0]) if items else {}
    price = _as_dict(first_item.get("price"))

    setup_intent = data.get("pending_setup_intent")
    setup_secret = _as_dict(setup_intent).get("client_secret") if not isinstance(setup_intent, str) else None

    latest_invoice = data.get("latest_invoice")
    payment_secret = None
    if latest_invoice is not None and not isinstance(latest_invoice, str):
        payment_intent = _as_dict(latest_invoice).get("payment_intent")
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_secret = _as_dict(payment_intent).get("client_secret")

    period_end = data.get("current_period_end") or first_item.get("current_period_end")
    return ProviderSubscription(
        id=data["id"],
        customer_id=_id_of(data.get("customer")),
        status=SubscriptionStatus(data["status"]),
        item_id=first_item.get("id"),
        price_id=price.get("id"),
        product_id=_id_of(price.get("product")),
        metadata=safe_metadata(_as_dict(data.get("metadata"))),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        current_period_end=parse_timestamp(period_end),
        trial_end=parse_timestamp(data.get("trial_end")),
        setup_intent_client_secret=setup_secret,
        payment_intent_client_secret=payment_secret,
    )


def payment_intent_from_stripe(obj: Any) -> ProviderPaymentIntent:
    data = _as_dict(obj)
    return ProviderPaymentIntent(
        id=data["id"],
        status=data.get("status") or "unknown",
        amount=int(data.get("amount_received") or data.get("amount") or 0),
        currency=data.get("currency") or "usd",
        customer_id=_id_of(data.get("customer")),
        client_secret=data.get("client_secret"),
        metadata=safe_metadata(_as_dict(data.get("metadata"))),
    )


class StripePaymentProvider:
    """Thin request/response adapter over the Stripe API."""

    def __init__(self, config: BillingConfig) -> None:
        if not config.secret_key:
            raise ProviderConfigurationError("Stripe secret key is not configured")
        self._config = config
        stripe.api_key = config.secret_key
        stripe.api_version = config.api_version
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=config.timeout_seconds)

    def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        try:
            result = stripe.Customer.list(email=email, limit=1)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "customer lookup") from exc
        customers = _as_dict(result).get("data") or []
        return customer_from_stripe(customers[0]) if customers else None

    def create_customer(
        self, *, email: str, name: Optional[str], metadata: Mapping[str, str]
    ) -> ProviderCustomer:
        params: Dict[str, Any] = {"email": email, "metadata": dict(metadata)}
        if name:
            params["name"] = name
        try:
            customer = stripe.Customer.create(**params)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "customer creation") from exc
        return customer_from_stripe(customer)

    def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "customer retrieval") from exc
        return customer_from_stripe(customer)

    def find_product(self, name: str) -> Optional[ProviderProduct]:
        try:
            result = stripe.Product.list(active=True, limit=100)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "product lookup") from exc
        for product in _as_dict(result).get("data") or []:
            data = _as_dict(product)
            if data.get("name") == name:
                return ProviderProduct(id=data["id"], name=data["name"])
        return None

    def create_product(self, *, name: str, metadata: Mapping[str, str]) -> ProviderProduct:
        try:
            product = _as_dict(stripe.Product.create(name=name, metadata=dict(metadata)))
        except stripe.StripeError as exc:
            raise _provider_error(exc, "product creation") from exc
        return ProviderProduct(id=product["id"], name=product["name"])

    def list_recurring_prices(self, product_id: str) -> Sequence[ProviderPrice]:
        try:
            result = stripe.Price.list(product=product_id, active=True, type="recurring", limit=100)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "price lookup") from exc
        return [price_from_stripe(price) for price in _as_dict(result).get("data") or []]

    def create_recurring_price(
        self,
        *,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: str,
        metadata: Mapping[str, str],
    ) -> ProviderPrice:
        try:
            price = stripe.Price.create(
                product=product_id,
                unit_amount=unit_amount,
                currency=currency,
                recurring={"interval": interval},
                metadata=dict(metadata),
            )
        except stripe.StripeError as exc:
            raise _provider_error(exc, "price creation") from exc
        return price_from_stripe(price)

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "subscription retrieval") from exc
        return subscription_from_stripe(subscription)

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        trial_period_days: Optional[int] = None,
    ) -> ProviderSubscription:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": list(_SUBSCRIPTION_EXPAND),
            "metadata": dict(metadata),
        }
        if trial_period_days:
            params["trial_period_days"] = trial_period_days
        try:
            subscription = stripe.Subscription.create(**params)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "subscription creation") from exc
        return subscription_from_stripe(subscription)

    def change_subscription_price(
        self,
        subscription_id: str,
        *,
        item_id: str,
        price_id: str,
        metadata: Mapping[str, str],
    ) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="create_prorations",
                cancel_at_period_end=False,
                metadata=dict(metadata),
            )
        except stripe.StripeError as exc:
            raise _provider_error(exc, "subscription update") from exc
        return subscription_from_stripe(subscription)

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "subscription cancellation") from exc

    def list_subscriptions(self, customer_id: str) -> Sequence[ProviderSubscription]:
        try:
            result = stripe.Subscription.list(customer=customer_id, status="all", limit=10)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "subscription listing") from exc
        return [subscription_from_stripe(sub) for sub in _as_dict(result).get("data") or []]

    def set_cancel_at_period_end(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.modify(
                subscription_id, cancel_at_period_end=cancel_at_period_end
            )
        except stripe.StripeError as exc:
            raise _provider_error(exc, "subscription update") from exc
        return subscription_from_stripe(subscription)

    def retrieve_product(self, product_id: str) -> ProviderProduct:
        try:
            product = _as_dict(stripe.Product.retrieve(product_id))
        except stripe.StripeError as exc:
            raise _provider_error(exc, "product retrieval") from exc
        return ProviderProduct(id=product["id"], name=product.get("name") or "")

    def create_setup_intent(
        self, customer_id: str, *, metadata: Mapping[str, str]
    ) -> ProviderSetupIntent:
        try:
            intent = _as_dict(
                stripe.SetupIntent.create(
                    customer=customer_id,
                    usage="off_session",
                    payment_method_types=["card"],
                    metadata=dict(metadata),
                )
            )
        except stripe.StripeError as exc:
            raise _provider_error(exc, "setup intent creation") from exc
        return ProviderSetupIntent(id=intent["id"], client_secret=intent["client_secret"])

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: Optional[str],
        metadata: Mapping[str, str],
    ) -> ProviderPaymentIntent:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": dict(metadata),
        }
        if customer_id:
            params["customer"] = customer_id
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "payment intent creation") from exc
        return payment_intent_from_stripe(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as exc:
            raise _provider_error(exc, "payment intent retrieval") from exc
        return payment_intent_from_stripe(intent)

    def update_payment_intent_metadata(
        self, payment_intent_id: str, metadata: Mapping[str, str]
    ) -> ProviderPaymentIntent:
        try:
            intent = stripe.PaymentIntent.modify(payment_intent_id, metadata=dict(metadata))
        except stripe.StripeError as exc:
            raise _provider_error(exc, "payment intent update") from exc
        return payment_intent_from_stripe(intent)

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        if not self._config.webhook_secret:
            raise ProviderConfigurationError("Stripe webhook secret is not configured")
        if not signature_header:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature_header, self._config.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise WebhookVerificationError("Malformed webhook payload") from exc
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError("Malformed webhook payload") from exc
        if not isinstance(event, dict):
            raise WebhookVerificationError("Webhook payload is not an object")
        return event


def subscription_ids_from_invoice(invoice: Mapping[str, Any]) -> List[str]:
    """Candidate subscription ids on an invoice payload, newest API shape first."""

    candidates: List[str] = []
    parent = _as_dict(invoice.get("parent"))
    details = _as_dict(parent.get("subscription_details"))
    for value in (details.get("subscription"), invoice.get("subscription")):
        sub_id = _id_of(value)
        if sub_id and sub_id not in candidates:
            candidates.append(sub_id)
    return candidates


__all__ = [
    "StripePaymentProvider",
    "customer_from_stripe",
    "payment_intent_from_stripe",
    "price_from_stripe",
    "subscription_from_stripe",
    "subscription_ids_from_invoice",
]
