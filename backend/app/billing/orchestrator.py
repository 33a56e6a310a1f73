"""Plan change orchestration against the billing provider."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .accounts import apply_account_update, try_account_update
from .catalog import get_plan_definition
from .config import BillingConfig
from .exceptions import (
    AccountNotFoundError,
    PlanChangeRejected,
    ProviderConfigurationError,
    ProviderError,
)
from .interfaces import AccountRepository, BillingEventLogger, BillingNotifier, PaymentProvider
from .models import (
    METADATA_BILLING_INTERVAL,
    METADATA_PLAN,
    METADATA_USER_ID,
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
    ProviderCustomer,
    ProviderSubscription,
    ReactivationResult,
    SubscriptionStatus,
)
from .pricing import PriceResolver

logger = logging.getLogger("billing")

_TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED})


def _parse_interval(raw: Union[BillingInterval, str, None]) -> BillingInterval:
    if isinstance(raw, BillingInterval):
        return raw
    try:
        return BillingInterval(str(raw).strip().lower())
    except ValueError as exc:
        raise PlanChangeRejected(f"Unknown billing interval: {raw!r}") from exc


@dataclass
class PlanChangeOrchestrator:
    """Decides which provider operation fulfils a requested plan change.

    Depending on the account's current subscription the orchestrator either
    starts a new subscription, swaps the price on an entitled one, or asks the
    browser to collect a payment method first. The caller receives a client
    secret to confirm in the browser, or a direct ``upgraded`` outcome.
    """

    repository: AccountRepository
    provider: PaymentProvider
    prices: PriceResolver
    event_logger: BillingEventLogger
    config: BillingConfig
    notifier: Optional[BillingNotifier] = None

    def request_plan_change(
        self,
        account_id: str,
        requested_plan: Union[PlanKey, str],
        billing_interval: Union[BillingInterval, str] = BillingInterval.MONTHLY,
    ) -> PlanChangeResult:
        plan = requested_plan if isinstance(requested_plan, PlanKey) else PlanKey.parse(requested_plan)
        if plan is None:
            raise PlanChangeRejected(f"Unknown plan: {requested_plan!r}")
        if plan is PlanKey.FREE:
            raise PlanChangeRejected("Downgrading to the free plan is handled by cancellation")
        interval = _parse_interval(billing_interval)

        account = self._require_account(account_id)
        if not account.email:
            raise PlanChangeRejected("An email address is required to subscribe")

        customer = self._resolve_customer(account)
        price_id = self.prices.resolve(plan, interval)

        if account.provider_subscription_id:
            existing = self._retrieve_existing(account)
            if existing is not None and existing.status.grants_entitlements:
                return self._change_existing(account, customer, existing, plan, interval, price_id)
            if existing is not None:
                self._discard_subscription(existing)
            account = self._forget_subscription(account, account.provider_subscription_id)

        return self._start_subscription(account, customer, plan, interval, price_id)

    def _require_account(self, account_id: str) -> Account:
        account = self.repository.get_account_by_user_id(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def _metadata(self, account: Account, plan: PlanKey, interval: BillingInterval) -> Dict[str, str]:
        return {
            METADATA_USER_ID: account.account_id,
            METADATA_PLAN: plan.value,
            METADATA_BILLING_INTERVAL: interval.value,
        }

    def _resolve_customer(self, account: Account) -> ProviderCustomer:
        if account.provider_customer_id:
            return self.provider.retrieve_customer(account.provider_customer_id)

        customer = self.provider.find_customer_by_email(account.email or "")
        if customer is not None:
            return customer

        customer = self.provider.create_customer(
            email=account.email or "",
            name=account.name,
            metadata={METADATA_USER_ID: account.account_id},
        )
        logger.info("Created provider customer %s for account %s", customer.id, account.account_id)
        return customer

    def _retrieve_existing(self, account: Account) -> Optional[ProviderSubscription]:
        subscription_id = account.provider_subscription_id or ""
        try:
            return self.provider.retrieve_subscription(subscription_id)
        except ProviderError as exc:
            if exc.code != "resource_missing":
                raise
            logger.warning(
                "Subscription %s on account %s no longer exists at the provider",
                subscription_id,
                account.account_id,
            )
            return None

    def _discard_subscription(self, subscription: ProviderSubscription) -> None:
        """Best-effort cancellation of a subscription that can no longer be paid."""

        if subscription.status is SubscriptionStatus.CANCELED:
            return
        try:
            self.provider.cancel_subscription(subscription.id)
            logger.info(
                "Canceled stale subscription %s (status=%s)",
                subscription.id,
                subscription.status.value,
            )
        except ProviderError as exc:
            logger.warning(
                "Failed to cancel stale subscription %s: %s",
                subscription.id,
                exc,
                extra={"retryable": exc.retryable},
            )

    def _forget_subscription(self, account: Account, subscription_id: str) -> Account:
        def compute(current: Account) -> Optional[AccountChanges]:
            if current.provider_subscription_id != subscription_id:
                return None
            return AccountChanges(provider_subscription_id=None)

        return apply_account_update(
            self.repository, account, compute, attempts=self.config.update_attempts
        )

    def _change_existing(
        self,
        account: Account,
        customer: ProviderCustomer,
        subscription: ProviderSubscription,
        plan: PlanKey,
        interval: BillingInterval,
        price_id: str,
    ) -> PlanChangeResult:
        metadata = self._metadata(account, plan, interval)

        if subscription.status is SubscriptionStatus.TRIALING:
            owner = customer
            if subscription.customer_id and subscription.customer_id != customer.id:
                owner = self.provider.retrieve_customer(subscription.customer_id)
            if not owner.has_payment_method:
                setup_intent = self.provider.create_setup_intent(owner.id, metadata=metadata)
                logger.info(
                    "Trialing subscription %s has no payment method; requested setup intent %s",
                    subscription.id,
                    setup_intent.id,
                )
                return PlanChangeResult(
                    outcome=PlanChangeOutcome.CLIENT_SECRET,
                    plan=plan,
                    billing_interval=interval,
                    subscription_id=subscription.id,
                    customer_id=owner.id,
                    client_secret=setup_intent.client_secret,
                    intent_kind=IntentKind.SETUP,
                )

        if not subscription.item_id:
            raise ProviderConfigurationError(f"Subscription {subscription.id} has no items")

        updated = self.provider.change_subscription_price(
            subscription.id,
            item_id=subscription.item_id,
            price_id=price_id,
            metadata={**subscription.metadata, **metadata},
        )

        persisted = try_account_update(
            self.repository,
            account,
            AccountChanges(plan=plan, cancel_at_period_end=False),
        )
        if persisted is None:
            logger.info(
                "Account %s was updated concurrently; leaving plan to webhook reconciliation",
                account.account_id,
            )

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_UPGRADED,
                account_id=account.account_id,
                subscription_id=updated.id,
                metadata={"plan": plan.value, "interval": interval.value, "price_id": price_id},
            )
        )
        return PlanChangeResult(
            outcome=PlanChangeOutcome.UPGRADED,
            plan=plan,
            billing_interval=interval,
            subscription_id=updated.id,
            customer_id=updated.customer_id or customer.id,
        )

    def _start_subscription(
        self,
        account: Account,
        customer: ProviderCustomer,
        plan: PlanKey,
        interval: BillingInterval,
        price_id: str,
    ) -> PlanChangeResult:
        grant_trial = not account.trial_used and self.config.trial_period_days > 0
        try:
            subscription = self.provider.create_subscription(
                customer_id=customer.id,
                price_id=price_id,
                metadata=self._metadata(account, plan, interval),
                trial_period_days=self.config.trial_period_days if grant_trial else None,
            )
        finally:
            if not account.trial_used:
                account = self.repository.mark_trial_used(account.account_id) or account

        def compute(current: Account) -> AccountChanges:
            return AccountChanges(
                provider_customer_id=customer.id,
                provider_subscription_id=subscription.id,
            )

        apply_account_update(self.repository, account, compute, attempts=self.config.update_attempts)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_STARTED,
                account_id=account.account_id,
                subscription_id=subscription.id,
                metadata={
                    "plan": plan.value,
                    "interval": interval.value,
                    "status": subscription.status.value,
                    "trial": str(grant_trial).lower(),
                },
            )
        )

        if subscription.setup_intent_client_secret:
            secret, kind = subscription.setup_intent_client_secret, IntentKind.SETUP
        elif subscription.payment_intent_client_secret:
            secret, kind = subscription.payment_intent_client_secret, IntentKind.PAYMENT
        else:
            raise ProviderConfigurationError(
                f"Subscription {subscription.id} returned no client secret to confirm"
            )

        return PlanChangeResult(
            outcome=PlanChangeOutcome.CLIENT_SECRET,
            plan=plan,
            billing_interval=interval,
            subscription_id=subscription.id,
            customer_id=customer.id,
            client_secret=secret,
            intent_kind=kind,
            trial_granted=grant_trial,
        )


    # Subscription lifecycle ---------------------------------------------

    def cancel_subscription(self, account_id: str) -> CancellationResult:
        """Cancel every live subscription immediately and drop the account to free.

        Provider failures abort before any local write so the call can be
        retried. The later ``subscription.deleted`` events find the account
        already downgraded and change nothing.
        """

        account = self._require_account(account_id)
        subscriptions = (
            self.provider.list_subscriptions(account.provider_customer_id)
            if account.provider_customer_id
            else []
        )
        canceled = []
        for subscription in subscriptions:
            if subscription.status in _TERMINAL_STATUSES:
                continue
            self.provider.cancel_subscription(subscription.id)
            canceled.append(subscription.id)

        previous_plans = []

        def compute(current: Account) -> AccountChanges:
            previous_plans.append(current.plan)
            return AccountChanges(
                plan=PlanKey.FREE,
                cancel_at_period_end=False,
                period_end=None,
                provider_subscription_id=None,
            )

        updated = apply_account_update(self.repository, account, compute, attempts=self.config.update_attempts)
        previous_plan = previous_plans[-1] if previous_plans else account.plan

        if canceled and get_plan_definition(previous_plan).is_paid and updated.email and self.notifier:
            self.notifier.send_downgrade_notice(updated.email, previous_plan)
        logger.info(
            "Canceled %d subscription(s) for account %s (was %s)",
            len(canceled),
            account.account_id,
            previous_plan.value,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCELED,
                account_id=account.account_id,
                subscription_id=canceled[0] if canceled else None,
                metadata={
                    "previous_plan": previous_plan.value,
                    "canceled": ",".join(canceled),
                    "source": "user",
                },
            )
        )
        return CancellationResult(previous_plan=previous_plan, canceled_subscription_ids=tuple(canceled))

    def reactivate_subscription(self, account_id: str) -> ReactivationResult:
        account = self._require_account(account_id)
        if not account.provider_customer_id:
            raise PlanChangeRejected("No subscription to reactivate")

        pending = next(
            (
                subscription
                for subscription in self.provider.list_subscriptions(account.provider_customer_id)
                if subscription.status.grants_entitlements and subscription.cancel_at_period_end
            ),
            None,
        )
        if pending is None:
            raise PlanChangeRejected("No pending cancellation found")

        subscription = self.provider.set_cancel_at_period_end(pending.id, False)
        plan = subscription.plan or account.plan

        def compute(current: Account) -> AccountChanges:
            return AccountChanges(
                cancel_at_period_end=False,
                period_end=subscription.current_period_end,
                provider_subscription_id=subscription.id,
            )

        updated = apply_account_update(self.repository, account, compute, attempts=self.config.update_attempts)
        if updated.email and self.notifier:
            self.notifier.send_reactivation_notice(updated.email, plan)

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_REACTIVATED,
                account_id=account.account_id,
                subscription_id=subscription.id,
                metadata={"plan": plan.value},
            )
        )
        return ReactivationResult(
            plan=plan, subscription_id=subscription.id, period_end=subscription.current_period_end
        )

    def sync_plan(self, account_id: str) -> PlanSyncResult:
        """Re-derive the account's plan from the subscriptions the provider holds.

        An active or trialing subscription decides the plan. A ``past_due``
        one leaves the plan alone until the provider settles it. Otherwise the
        account is on the free plan.
        """

        account = self._require_account(account_id)
        customer_id = account.provider_customer_id
        if not customer_id and account.email:
            customer = self.provider.find_customer_by_email(account.email)
            customer_id = customer.id if customer else None

        subscriptions = self.provider.list_subscriptions(customer_id) if customer_id else []
        entitled = next((sub for sub in subscriptions if sub.status.grants_entitlements), None)
        past_due = any(sub.status is SubscriptionStatus.PAST_DUE for sub in subscriptions)
        entitled_plan = self._plan_of(entitled) if entitled is not None else None

        def compute(current: Account) -> Optional[AccountChanges]:
            fields: Dict[str, Any] = {}
            if customer_id:
                fields["provider_customer_id"] = customer_id
            if entitled is not None:
                fields.update(
                    plan=entitled_plan,
                    provider_subscription_id=entitled.id,
                    cancel_at_period_end=entitled.cancel_at_period_end,
                    period_end=entitled.current_period_end,
                )
            elif not past_due:
                fields.update(plan=PlanKey.FREE, cancel_at_period_end=False, period_end=None)
            return AccountChanges(**fields) if fields else None

        updated = apply_account_update(self.repository, account, compute, attempts=self.config.update_attempts)
        result = PlanSyncResult(
            plan=updated.plan,
            previous_plan=account.plan,
            customer_id=customer_id,
            subscription_id=entitled.id if entitled else None,
            subscription_status=entitled.status if entitled else None,
        )
        if result.changed:
            logger.info(
                "Synced account %s plan %s -> %s",
                account.account_id,
                account.plan.value,
                updated.plan.value,
            )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PLAN_SYNCED,
                account_id=account.account_id,
                subscription_id=result.subscription_id,
                metadata={"plan": result.plan.value, "previous_plan": account.plan.value},
            )
        )
        return result

    def _plan_of(self, subscription: ProviderSubscription) -> PlanKey:
        if subscription.plan is not None:
            return subscription.plan
        # Subscriptions created outside this service carry no plan metadata.
        if subscription.product_id:
            name = self.provider.retrieve_product(subscription.product_id).name.lower()
            for candidate in (PlanKey.ENTERPRISE, PlanKey.PROFESSIONAL):
                if candidate.value in name:
                    return candidate
        return PlanKey.PROFESSIONAL


__all__ = ["PlanChangeOrchestrator"]
