"""Reconciliation of provider webhook events into local account state."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from pydantic import ValidationError

from ..credits.ledger import CreditLedger
from ..credits.models import CreditKind
from .accounts import apply_account_update
from .catalog import from_minor_units, get_plan_definition
from .exceptions import (
    PaymentNotFoundError,
    ProviderError,
    SubAccountNotFoundError,
    TopupRejected,
    WebhookVerificationError,
)
from .interfaces import AccountRepository, BillingEventLogger, BillingNotifier, PaymentProvider
from .models import (
    METADATA_BUSINESS_ID,
    METADATA_CREDIT_KIND,
    METADATA_PROCESSED,
    METADATA_QUANTITY,
    METADATA_TYPE,
    METADATA_USER_ID,
    Account,
    AccountChanges,
    BillingAuditEvent,
    BillingAuditEventType,
    PaymentIntentPurpose,
    PlanKey,
    ProviderEvent,
    ProviderEventType,
    ProviderPaymentIntent,
    ProviderSubscription,
    WebhookOutcome,
    WebhookResult,
)
from .provider import subscription_from_stripe, subscription_ids_from_invoice
from .topups import TopupConfirmation

logger = logging.getLogger("billing")

Handler = Callable[[ProviderEvent], WebhookResult]


def _result(event: ProviderEvent, outcome: WebhookOutcome, detail: Optional[str] = None) -> WebhookResult:
    return WebhookResult(event_id=event.id, event_type=event.type, outcome=outcome, detail=detail)


@dataclass
class WebhookProcessor:
    """Applies verified provider events to accounts and credit balances.

    Handlers are idempotent: subscription changes are gated on the status the
    event itself carries and top-ups are gated on a ``processed`` marker
    stored on the provider's payment intent. Events that cannot be tied to
    an account are logged and acknowledged. Storage failures propagate so
    the provider redelivers.
    """

    repository: AccountRepository
    ledger: CreditLedger
    provider: PaymentProvider
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    update_attempts: int = 3

    def handle_event(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        payload = self.provider.construct_event(raw_body, signature_header)
        try:
            event = ProviderEvent.from_payload(payload)
        except (KeyError, ValidationError) as exc:
            raise WebhookVerificationError("Webhook payload is missing id or type") from exc
        return self.process(event)

    def process(self, event: ProviderEvent) -> WebhookResult:
        handlers: Dict[ProviderEventType, Handler] = {
            ProviderEventType.SUBSCRIPTION_CREATED: self._on_subscription_created,
            ProviderEventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            ProviderEventType.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            ProviderEventType.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_paid,
            ProviderEventType.INVOICE_PAYMENT_FAILED: self._on_invoice_failed,
            ProviderEventType.PAYMENT_INTENT_SUCCEEDED: self._on_payment_intent_succeeded,
        }
        event_type = event.event_type
        handler = handlers.get(event_type) if event_type else None
        if handler is None:
            logger.debug("Ignoring webhook event %s of type %s", event.id, event.type)
            return _result(event, WebhookOutcome.IGNORED)

        result = handler(event)
        logger.info(
            "Processed webhook event %s type=%s outcome=%s",
            event.id,
            event.type,
            result.outcome.value,
            extra={"event_id": event.id, "detail": result.detail},
        )
        return result

    # Account resolution -------------------------------------------------

    def _resolve_account(
        self, customer_id: Optional[str], metadata: Mapping[str, str]
    ) -> Optional[Account]:
        if customer_id:
            account = self.repository.get_account_by_provider_customer_id(customer_id)
            if account is not None:
                return account
        user_id = metadata.get(METADATA_USER_ID)
        if user_id:
            return self.repository.get_account_by_user_id(user_id)
        return None

    def _unresolved(self, event: ProviderEvent, customer_id: Optional[str]) -> WebhookResult:
        logger.warning(
            "No account matches webhook event %s (%s) customer=%s",
            event.id,
            event.type,
            customer_id,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.EVENT_UNRESOLVED,
                metadata={"event_id": event.id, "event_type": event.type, "customer_id": customer_id or ""},
            )
        )
        return _result(event, WebhookOutcome.SKIPPED, "account_not_found")

    def _subscription_from_event(self, event: ProviderEvent) -> Optional[ProviderSubscription]:
        try:
            return subscription_from_stripe(event.data_object)
        except (KeyError, ValueError, TypeError) as exc:
            logger.warning("Malformed subscription payload in event %s: %s", event.id, exc)
            return None

    def _update(self, account: Account, compute: Callable[[Account], Optional[AccountChanges]]) -> Account:
        return apply_account_update(self.repository, account, compute, attempts=self.update_attempts)

    # Subscription lifecycle ---------------------------------------------

    def _on_subscription_created(self, event: ProviderEvent) -> WebhookResult:
        subscription = self._subscription_from_event(event)
        if subscription is None:
            return _result(event, WebhookOutcome.SKIPPED, "malformed_subscription")
        account = self._resolve_account(subscription.customer_id, subscription.metadata)
        if account is None:
            return self._unresolved(event, subscription.customer_id)

        entitled_plan = subscription.plan if subscription.status.grants_entitlements else None

        def compute(current: Account) -> AccountChanges:
            fields: Dict[str, Any] = {"provider_subscription_id": subscription.id}
            if subscription.customer_id:
                fields["provider_customer_id"] = subscription.customer_id
            if entitled_plan is not None:
                fields["plan"] = entitled_plan
            return AccountChanges(**fields)

        updated = self._update(account, compute)
        self._audit_subscription(
            BillingAuditEventType.SUBSCRIPTION_ACTIVATED if entitled_plan else BillingAuditEventType.SUBSCRIPTION_UPDATED,
            updated,
            subscription,
        )
        return _result(event, WebhookOutcome.APPLIED, f"status={subscription.status.value}")

    def _on_subscription_updated(self, event: ProviderEvent) -> WebhookResult:
        subscription = self._subscription_from_event(event)
        if subscription is None:
            return _result(event, WebhookOutcome.SKIPPED, "malformed_subscription")
        account = self._resolve_account(subscription.customer_id, subscription.metadata)
        if account is None:
            return self._unresolved(event, subscription.customer_id)

        entitled_plan = subscription.plan if subscription.status.grants_entitlements else None

        def compute(current: Account) -> AccountChanges:
            fields: Dict[str, Any] = {
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "period_end": subscription.current_period_end,
            }
            if entitled_plan is not None:
                fields["plan"] = entitled_plan
            return AccountChanges(**fields)

        updated = self._update(account, compute)
        self._audit_subscription(BillingAuditEventType.SUBSCRIPTION_UPDATED, updated, subscription)
        return _result(event, WebhookOutcome.APPLIED, f"status={subscription.status.value}")

    def _on_subscription_deleted(self, event: ProviderEvent) -> WebhookResult:
        subscription = self._subscription_from_event(event)
        if subscription is None:
            return _result(event, WebhookOutcome.SKIPPED, "malformed_subscription")
        account = self._resolve_account(subscription.customer_id, subscription.metadata)
        if account is None:
            return self._unresolved(event, subscription.customer_id)

        previous_plans = []

        def compute(current: Account) -> AccountChanges:
            previous_plans.append(current.plan)
            return AccountChanges(
                plan=PlanKey.FREE,
                cancel_at_period_end=False,
                period_end=None,
                provider_subscription_id=None,
            )

        updated = self._update(account, compute)
        previous_plan = previous_plans[-1] if previous_plans else account.plan
        if get_plan_definition(previous_plan).is_paid and updated.email:
            self.notifier.send_downgrade_notice(updated.email, previous_plan)

        self._audit_subscription(
            BillingAuditEventType.SUBSCRIPTION_CANCELED,
            updated,
            subscription,
            previous_plan=previous_plan.value,
        )
        return _result(event, WebhookOutcome.APPLIED, "downgraded")

    def _audit_subscription(
        self,
        event_type: BillingAuditEventType,
        account: Account,
        subscription: ProviderSubscription,
        **metadata: str,
    ) -> None:
        self.event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                account_id=account.account_id,
                subscription_id=subscription.id,
                metadata={"status": subscription.status.value, "plan": account.plan.value, **metadata},
            )
        )

    # Invoices -----------------------------------------------------------

    def _on_invoice_paid(self, event: ProviderEvent) -> WebhookResult:
        invoice = event.data_object
        candidates = subscription_ids_from_invoice(invoice)
        if not candidates:
            return _result(event, WebhookOutcome.IGNORED, "no_subscription")

        try:
            subscription = self.provider.retrieve_subscription(candidates[0])
        except ProviderError as exc:
            logger.warning(
                "Could not load subscription %s for invoice event %s: %s",
                candidates[0],
                event.id,
                exc,
            )
            return _result(event, WebhookOutcome.SKIPPED, "subscription_unavailable")

        plan = subscription.plan
        if plan is None:
            logger.info("Subscription %s carries no plan metadata; nothing to apply", subscription.id)
            return _result(event, WebhookOutcome.SKIPPED, "no_plan_metadata")

        customer_id = subscription.customer_id or invoice.get("customer")
        account = self._resolve_account(customer_id, subscription.metadata)
        if account is None:
            return self._unresolved(event, customer_id)

        def compute(current: Account) -> AccountChanges:
            return AccountChanges(plan=plan, provider_subscription_id=subscription.id)

        updated = self._update(account, compute)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_SUCCEEDED,
                account_id=updated.account_id,
                subscription_id=subscription.id,
                metadata={"invoice_id": str(invoice.get("id") or ""), "plan": plan.value},
            )
        )
        return _result(event, WebhookOutcome.APPLIED, f"plan={plan.value}")

    def _on_invoice_failed(self, event: ProviderEvent) -> WebhookResult:
        invoice = event.data_object
        candidates = subscription_ids_from_invoice(invoice)
        customer_id = invoice.get("customer")
        logger.warning(
            "Invoice payment failed invoice=%s subscription=%s customer=%s attempt=%s",
            invoice.get("id"),
            candidates[0] if candidates else None,
            customer_id,
            invoice.get("attempt_count"),
        )
        account = self._resolve_account(customer_id if isinstance(customer_id, str) else None, {})
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_FAILED,
                account_id=account.account_id if account else None,
                subscription_id=candidates[0] if candidates else None,
                metadata={"invoice_id": str(invoice.get("id") or "")},
            )
        )
        return _result(event, WebhookOutcome.APPLIED, "logged")

    # Credit top-ups -----------------------------------------------------

    def _on_payment_intent_succeeded(self, event: ProviderEvent) -> WebhookResult:
        if event.metadata.get(METADATA_TYPE) != PaymentIntentPurpose.CREDIT_TOPUP.value:
            return _result(event, WebhookOutcome.IGNORED, "not_a_topup")

        payment_intent_id = event.data_object.get("id")
        if not payment_intent_id:
            return _result(event, WebhookOutcome.SKIPPED, "missing_payment_intent_id")

        # The event body is immutable; only the live object carries the processed marker.
        intent = self.provider.retrieve_payment_intent(payment_intent_id)
        if intent.is_processed:
            logger.info("Top-up %s already credited; skipping redelivery", intent.id)
            return _result(event, WebhookOutcome.SKIPPED, "already_processed")

        purchase = _parse_topup(intent)
        if purchase is None:
            return _result(event, WebhookOutcome.SKIPPED, "malformed_metadata")
        business_id, kind, quantity = purchase

        new_balance = self._credit_topup(intent, business_id, kind, quantity)
        if new_balance is None:
            return _result(event, WebhookOutcome.SKIPPED, "business_not_found")
        return _result(event, WebhookOutcome.APPLIED, f"credited={quantity}")

    def confirm_topup(self, account_id: str, payment_intent_id: str) -> TopupConfirmation:
        """Credit a finished top-up on the buyer's request instead of waiting for the webhook.

        Shares the ``processed`` marker with the webhook handler, so whichever
        path runs first credits the purchase and the other reports the balance.
        """

        try:
            intent = self.provider.retrieve_payment_intent(payment_intent_id)
        except ProviderError as exc:
            if exc.code == "resource_missing":
                raise PaymentNotFoundError(f"Payment {payment_intent_id} not found") from exc
            raise
        if intent.metadata.get(METADATA_USER_ID) != account_id:
            raise PaymentNotFoundError(f"Payment {payment_intent_id} not found")
        if intent.metadata.get(METADATA_TYPE) != PaymentIntentPurpose.CREDIT_TOPUP.value:
            raise TopupRejected(f"Payment {intent.id} is not a credit purchase")
        if not intent.succeeded:
            raise TopupRejected(f"Payment {intent.id} has not succeeded yet (status={intent.status})")

        purchase = _parse_topup(intent)
        if purchase is None:
            raise TopupRejected(f"Payment {intent.id} carries unusable purchase details")
        business_id, kind, quantity = purchase

        if intent.is_processed:
            balance = self.ledger.get_balance(business_id, kind).balance
            return TopupConfirmation(
                payment_intent_id=intent.id,
                business_id=business_id,
                kind=kind,
                quantity=quantity,
                credited=False,
                balance=balance,
            )

        new_balance = self._credit_topup(intent, business_id, kind, quantity)
        if new_balance is None:
            raise SubAccountNotFoundError(f"Business {business_id} not found")
        return TopupConfirmation(
            payment_intent_id=intent.id,
            business_id=business_id,
            kind=kind,
            quantity=quantity,
            credited=True,
            balance=new_balance,
        )

    def _credit_topup(
        self, intent: ProviderPaymentIntent, business_id: int, kind: CreditKind, quantity: int
    ) -> Optional[int]:
        new_balance = self.ledger.increment(business_id, kind, quantity)
        if new_balance is None:
            logger.warning("Top-up %s references unknown business %s", intent.id, business_id)
            return None

        metadata = intent.metadata
        # Credits are committed; a redelivery after this point must not credit again.
        stamped = True
        try:
            self.provider.update_payment_intent_metadata(intent.id, {**metadata, METADATA_PROCESSED: "true"})
        except ProviderError:
            stamped = False
            logger.exception(
                "Credited top-up %s but could not mark it processed",
                intent.id,
                extra={"payment_intent_id": intent.id, "business_id": business_id},
            )

        total = from_minor_units(intent.amount, intent.currency)
        account = self._resolve_account(intent.customer_id, metadata)
        if account is not None and account.email:
            self.notifier.send_credits_purchased_notice(
                account.email, quantity, total, new_balance, intent.currency
            )

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CREDITS_PURCHASED,
                account_id=account.account_id if account else metadata.get(METADATA_USER_ID),
                metadata={
                    "payment_intent_id": intent.id,
                    "business_id": str(business_id),
                    "kind": kind.value,
                    "quantity": str(quantity),
                    "new_balance": str(new_balance),
                    "stamped": str(stamped).lower(),
                },
            )
        )
        return new_balance


def _parse_topup(intent: ProviderPaymentIntent) -> Optional[Tuple[int, CreditKind, int]]:
    metadata = intent.metadata
    try:
        business_id = int(metadata[METADATA_BUSINESS_ID])
        quantity = int(metadata.get(METADATA_QUANTITY) or "1")
        kind = CreditKind(metadata.get(METADATA_CREDIT_KIND) or CreditKind.INVOICE.value)
    except (KeyError, ValueError) as exc:
        logger.warning("Top-up %s has unusable metadata %s: %s", intent.id, metadata, exc)
        return None
    if quantity < 1:
        logger.warning("Top-up %s has non-positive quantity %s", intent.id, quantity)
        return None
    return business_id, kind, quantity


__all__ = ["WebhookProcessor"]
