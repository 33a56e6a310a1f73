"""Application wiring for the billing services."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import BillingAuditEvent, BillingEventLogger
from ..billing.config import BillingConfig, load_billing_config
from ..billing.orchestrator import PlanChangeOrchestrator
from ..billing.pricing import PriceResolver
from ..billing.provider import StripePaymentProvider
from ..billing.repository import PostgresAccountRepository
from ..billing.topups import CreditTopupService
from ..billing.webhooks import WebhookProcessor
from ..credits.ledger import PostgresCreditLedger
from ..feature_gates import LimitEnforcer
from ..notifications import EmailBillingNotifier, create_email_provider, load_email_config


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s account=%s subscription=%s metadata=%s",
            event.event_type.value,
            event.account_id,
            event.subscription_id,
            event.metadata,
            extra={"billing_event": event.event_type.value, "account_id": event.account_id},
        )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_account_repository() -> PostgresAccountRepository:
    return PostgresAccountRepository()


@lru_cache(maxsize=1)
def get_credit_ledger() -> PostgresCreditLedger:
    return PostgresCreditLedger()


@lru_cache(maxsize=1)
def get_payment_provider() -> StripePaymentProvider:
    return StripePaymentProvider(get_billing_config())


@lru_cache(maxsize=1)
def get_billing_notifier() -> EmailBillingNotifier:
    email_config = load_email_config()
    return EmailBillingNotifier(create_email_provider(email_config), email_config)


@lru_cache(maxsize=1)
def get_event_logger() -> LoggingBillingEventLogger:
    return LoggingBillingEventLogger()


@lru_cache(maxsize=1)
def get_plan_change_orchestrator() -> PlanChangeOrchestrator:
    config = get_billing_config()
    provider = get_payment_provider()
    return PlanChangeOrchestrator(
        repository=get_account_repository(),
        provider=provider,
        prices=PriceResolver(provider=provider, config=config),
        event_logger=get_event_logger(),
        config=config,
        notifier=get_billing_notifier(),
    )


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(
        repository=get_account_repository(),
        ledger=get_credit_ledger(),
        provider=get_payment_provider(),
        notifier=get_billing_notifier(),
        event_logger=get_event_logger(),
        update_attempts=get_billing_config().update_attempts,
    )


@lru_cache(maxsize=1)
def get_topup_service() -> CreditTopupService:
    return CreditTopupService(
        repository=get_account_repository(),
        ledger=get_credit_ledger(),
        provider=get_payment_provider(),
        config=get_billing_config(),
    )


@lru_cache(maxsize=1)
def get_limit_enforcer() -> LimitEnforcer:
    return LimitEnforcer(ledger=get_credit_ledger())


__all__ = [
    "LoggingBillingEventLogger",
    "get_account_repository",
    "get_billing_config",
    "get_credit_ledger",
    "get_limit_enforcer",
    "get_plan_change_orchestrator",
    "get_topup_service",
    "get_webhook_processor",
]
