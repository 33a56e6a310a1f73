"""Tests for webhook reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from backend.app.billing.exceptions import (
    ConcurrentUpdateError,
    PaymentNotFoundError,
    ProviderError,
    SubAccountNotFoundError,
    TopupRejected,
    WebhookVerificationError,
)
from backend.app.billing.models import (
    BillingAuditEventType,
    PlanKey,
    ProviderEvent,
    SubscriptionStatus,
    WebhookOutcome,
)
from backend.app.billing.webhooks import WebhookProcessor
from backend.app.credits.models import CreditKind

VALID_SIGNATURE = "t=1,v1=valid"


def _event(event_payload, event_type, data_object, event_id="evt_1"):
    return ProviderEvent.from_payload(event_payload(event_type, data_object, event_id))


def _topup_metadata(**overrides):
    metadata = {
        "type": "credit_topup",
        "userId": "user-1",
        "businessId": "7",
        "creditKind": "invoice",
        "quantity": "3",
    }
    metadata.update(overrides)
    return metadata


def test_rejects_invalid_signature(processor, webhook_body):
    with pytest.raises(WebhookVerificationError):
        processor.handle_event(webhook_body("customer.subscription.created", {}), "t=1,v1=forged")


def test_rejects_payload_without_event_type(processor):
    with pytest.raises(WebhookVerificationError):
        processor.handle_event(b'{"id": "evt_1"}', VALID_SIGNATURE)


def test_unknown_event_types_are_ignored(processor, webhook_body):
    result = processor.handle_event(webhook_body("charge.refunded", {"id": "ch_1"}), VALID_SIGNATURE)

    assert result.outcome is WebhookOutcome.IGNORED
    assert result.event_id == "evt_1"


def test_subscription_created_active_applies_plan(processor, repository, subscription_payload, webhook_body):
    repository.add("user-1", provider_customer_id="cus_evt")

    result = processor.handle_event(
        webhook_body(
            "customer.subscription.created",
            subscription_payload(status="active", metadata={"plan": "enterprise", "userId": "user-1"}),
        ),
        VALID_SIGNATURE,
    )

    assert result.outcome is WebhookOutcome.APPLIED
    account = repository.accounts["user-1"]
    assert account.plan is PlanKey.ENTERPRISE
    assert account.provider_subscription_id == "sub_evt"


def test_subscription_created_incomplete_keeps_plan(processor, repository, event_payload, subscription_payload):
    repository.add("user-1", provider_customer_id="cus_evt")

    processor.process(
        _event(event_payload, "customer.subscription.created", subscription_payload(status="incomplete"))
    )

    account = repository.accounts["user-1"]
    assert account.plan is PlanKey.FREE
    assert account.provider_subscription_id == "sub_evt"


def test_subscription_created_falls_back_to_user_id_metadata(
    processor, repository, event_payload, subscription_payload
):
    repository.add("user-1")

    processor.process(
        _event(
            event_payload,
            "customer.subscription.created",
            subscription_payload(status="trialing", metadata={"plan": "professional", "userId": "user-1"}),
        )
    )

    account = repository.accounts["user-1"]
    assert account.provider_customer_id == "cus_evt"
    assert account.plan is PlanKey.PROFESSIONAL


def test_unresolved_account_is_acknowledged(processor, event_logger, event_payload, subscription_payload):
    result = processor.process(
        _event(event_payload, "customer.subscription.updated", subscription_payload(customer="cus_unknown"))
    )

    assert result.outcome is WebhookOutcome.SKIPPED
    assert result.detail == "account_not_found"
    assert event_logger.events[-1].event_type is BillingAuditEventType.EVENT_UNRESOLVED


def test_subscription_updated_mirrors_cancellation_flags(
    processor, repository, event_payload, subscription_payload
):
    repository.add("user-1", plan=PlanKey.PROFESSIONAL, provider_customer_id="cus_evt")

    processor.process(
        _event(
            event_payload,
            "customer.subscription.updated",
            subscription_payload(cancel_at_period_end=True, current_period_end=1767225600),
        )
    )

    account = repository.accounts["user-1"]
    assert account.cancel_at_period_end is True
    assert account.period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert account.plan is PlanKey.PROFESSIONAL


def test_past_due_update_never_changes_plan(processor, repository, event_payload, subscription_payload):
    repository.add("user-1", plan=PlanKey.PROFESSIONAL, provider_customer_id="cus_evt")

    processor.process(
        _event(
            event_payload,
            "customer.subscription.updated",
            subscription_payload(status="past_due", metadata={"plan": "enterprise"}),
        )
    )

    assert repository.accounts["user-1"].plan is PlanKey.PROFESSIONAL


def test_subscription_deleted_downgrades_and_notifies(
    processor, repository, notifier, event_logger, event_payload, subscription_payload
):
    repository.add(
        "user-1",
        plan=PlanKey.ENTERPRISE,
        provider_customer_id="cus_evt",
        provider_subscription_id="sub_evt",
        cancel_at_period_end=True,
        period_end=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )

    result = processor.process(
        _event(event_payload, "customer.subscription.deleted", subscription_payload(status="canceled"))
    )

    assert result.outcome is WebhookOutcome.APPLIED
    account = repository.accounts["user-1"]
    assert account.plan is PlanKey.FREE
    assert account.provider_subscription_id is None
    assert account.cancel_at_period_end is False
    assert account.period_end is None
    assert notifier.downgrades == [("user-1@example.com", PlanKey.ENTERPRISE)]
    assert event_logger.events[-1].metadata["previous_plan"] == "enterprise"


def test_subscription_deleted_for_free_account_sends_no_notice(
    processor, repository, notifier, event_payload, subscription_payload
):
    repository.add("user-1", provider_customer_id="cus_evt")

    processor.process(
        _event(event_payload, "customer.subscription.deleted", subscription_payload(status="canceled"))
    )

    assert notifier.downgrades == []


def test_redelivered_subscription_event_is_idempotent(
    processor, repository, event_payload, subscription_payload
):
    repository.add("user-1", provider_customer_id="cus_evt")
    event = _event(
        event_payload,
        "customer.subscription.created",
        subscription_payload(status="active", metadata={"plan": "professional"}),
    )

    processor.process(event)
    first = repository.accounts["user-1"]
    processor.process(event)

    assert repository.accounts["user-1"].version == first.version


def test_webhook_write_retries_after_concurrent_change(
    processor, repository, event_payload, subscription_payload
):
    repository.add("user-1", provider_customer_id="cus_evt")

    def concurrent_write(account_id: str) -> None:
        current = repository.accounts[account_id]
        repository.accounts[account_id] = current.model_copy(
            update={"version": current.version + 1, "trial_used": True}
        )

    repository.before_update = concurrent_write

    processor.process(
        _event(
            event_payload,
            "customer.subscription.created",
            subscription_payload(status="active", metadata={"plan": "professional"}),
        )
    )

    account = repository.accounts["user-1"]
    assert account.plan is PlanKey.PROFESSIONAL
    assert account.trial_used is True


def test_webhook_write_gives_up_when_account_keeps_changing(
    repository, ledger, provider, notifier, event_logger, event_payload, subscription_payload
):
    processor = WebhookProcessor(
        repository=repository,
        ledger=ledger,
        provider=provider,
        notifier=notifier,
        event_logger=event_logger,
        update_attempts=1,
    )
    repository.add(
        "user-1",
        plan=PlanKey.PROFESSIONAL,
        provider_customer_id="cus_evt",
        provider_subscription_id="sub_evt",
    )

    def concurrent_write(account_id: str) -> None:
        current = repository.accounts[account_id]
        repository.accounts[account_id] = current.model_copy(update={"version": current.version + 1})

    repository.before_update = concurrent_write

    with pytest.raises(ConcurrentUpdateError):
        processor.process(
            _event(event_payload, "customer.subscription.deleted", subscription_payload(status="canceled"))
        )
    assert repository.accounts["user-1"].plan is PlanKey.PROFESSIONAL


def test_invoice_paid_applies_plan_from_subscription(processor, repository, provider, event_logger, event_payload):
    repository.add("user-1", provider_customer_id="cus_1")
    subscription = provider.add_subscription("cus_1", SubscriptionStatus.ACTIVE, plan=PlanKey.ENTERPRISE)

    result = processor.process(
        _event(
            event_payload,
            "invoice.payment_succeeded",
            {
                "id": "in_1",
                "customer": "cus_1",
                "parent": {"subscription_details": {"subscription": subscription.id}},
            },
        )
    )

    assert result.outcome is WebhookOutcome.APPLIED
    account = repository.accounts["user-1"]
    assert account.plan is PlanKey.ENTERPRISE
    assert account.provider_subscription_id == subscription.id
    assert event_logger.events[-1].event_type is BillingAuditEventType.PAYMENT_SUCCEEDED


def test_invoice_without_subscription_is_ignored(processor, event_payload):
    result = processor.process(_event(event_payload, "invoice.payment_succeeded", {"id": "in_1"}))

    assert result.outcome is WebhookOutcome.IGNORED


def test_invoice_with_unavailable_subscription_is_skipped(processor, repository, event_payload):
    repository.add("user-1", provider_customer_id="cus_1")

    result = processor.process(
        _event(event_payload, "invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_missing"})
    )

    assert result.outcome is WebhookOutcome.SKIPPED
    assert repository.accounts["user-1"].plan is PlanKey.FREE


def test_invoice_payment_failed_is_logged_only(processor, repository, event_logger, event_payload):
    repository.add("user-1", plan=PlanKey.PROFESSIONAL, provider_customer_id="cus_1")

    result = processor.process(
        _event(
            event_payload,
            "invoice.payment_failed",
            {"id": "in_2", "customer": "cus_1", "subscription": "sub_1", "attempt_count": 2},
        )
    )

    assert result.outcome is WebhookOutcome.APPLIED
    assert repository.accounts["user-1"].plan is PlanKey.PROFESSIONAL
    assert event_logger.events[-1].event_type is BillingAuditEventType.PAYMENT_FAILED
    assert event_logger.events[-1].account_id == "user-1"


def test_topup_credits_balance_once(processor, repository, ledger, provider, notifier, event_payload):
    repository.add("user-1")
    ledger.add_business(7, invoice_credits=2)
    intent = provider.add_payment_intent(147, _topup_metadata())
    event = _event(
        event_payload,
        "payment_intent.succeeded",
        {"id": intent.id, "metadata": _topup_metadata()},
    )

    first = processor.process(event)
    second = processor.process(event)

    assert first.outcome is WebhookOutcome.APPLIED
    assert second.outcome is WebhookOutcome.SKIPPED
    assert second.detail == "already_processed"
    assert ledger.balance(7) == 5
    assert provider.payment_intents[intent.id].metadata["processed"] == "true"
    assert notifier.credits_purchased == [("user-1@example.com", 3, Decimal("1.47"), 5, "usd")]


def test_topup_defaults_to_single_invoice_credit(processor, ledger, provider, event_payload):
    ledger.add_business(7)
    metadata = {"type": "credit_topup", "businessId": "7"}
    intent = provider.add_payment_intent(99, metadata)

    processor.process(_event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": metadata}))

    assert ledger.balance(7, CreditKind.INVOICE) == 1
    assert ledger.balance(7, CreditKind.EXPENSE) == 0


def test_topup_for_expense_credits(processor, ledger, provider, event_payload):
    ledger.add_business(7)
    metadata = _topup_metadata(creditKind="expense", quantity="2")
    intent = provider.add_payment_intent(198, metadata)

    processor.process(_event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": metadata}))

    assert ledger.balance(7, CreditKind.EXPENSE) == 2


def test_non_topup_payment_intent_is_ignored(processor, provider, event_payload):
    result = processor.process(
        _event(event_payload, "payment_intent.succeeded", {"id": "pi_x", "metadata": {"type": "invoice"}})
    )

    assert result.outcome is WebhookOutcome.IGNORED
    assert provider.calls == []


@pytest.mark.parametrize(
    "overrides",
    [{"businessId": "abc"}, {"quantity": "0"}, {"creditKind": "bananas"}],
)
def test_topup_with_malformed_metadata_is_skipped(processor, ledger, provider, event_payload, overrides):
    ledger.add_business(7)
    metadata = _topup_metadata(**overrides)
    intent = provider.add_payment_intent(49, metadata)

    result = processor.process(
        _event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": metadata})
    )

    assert result.outcome is WebhookOutcome.SKIPPED
    assert result.detail == "malformed_metadata"
    assert ledger.balance(7) == 0


def test_topup_for_unknown_business_is_skipped(processor, provider, event_payload):
    metadata = _topup_metadata(businessId="404")
    intent = provider.add_payment_intent(49, metadata)

    result = processor.process(
        _event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": metadata})
    )

    assert result.detail == "business_not_found"
    assert "processed" not in provider.payment_intents[intent.id].metadata


def test_topup_provider_failure_propagates_for_redelivery(processor, ledger, provider, event_payload):
    ledger.add_business(7)
    intent = provider.add_payment_intent(49, _topup_metadata())
    provider.failures["retrieve_payment_intent"] = ProviderError("timeout")

    with pytest.raises(ProviderError):
        processor.process(
            _event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": _topup_metadata()})
        )
    assert ledger.balance(7) == 0


def test_topup_stamp_failure_still_acknowledges_and_credits_once(
    processor, repository, ledger, provider, notifier, event_logger, event_payload
):
    repository.add("user-1")
    ledger.add_business(7)
    intent = provider.add_payment_intent(147, _topup_metadata())
    event = _event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": _topup_metadata()})
    provider.failures["update_payment_intent_metadata"] = ProviderError("timeout")

    result = processor.process(event)

    assert result.outcome is WebhookOutcome.APPLIED
    assert ledger.balance(7) == 3
    assert "processed" not in provider.payment_intents[intent.id].metadata
    assert notifier.credits_purchased == [("user-1@example.com", 3, Decimal("1.47"), 3, "usd")]
    audit = event_logger.events[-1]
    assert audit.event_type is BillingAuditEventType.CREDITS_PURCHASED
    assert audit.metadata["stamped"] == "false"


def test_topup_notice_uses_zero_decimal_currency(processor, repository, ledger, provider, notifier, event_payload):
    repository.add("user-1")
    ledger.add_business(7)
    intent = provider.add_payment_intent(450, _topup_metadata(), currency="jpy")

    processor.process(_event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": _topup_metadata()}))

    assert notifier.credits_purchased == [("user-1@example.com", 3, Decimal("450"), 3, "jpy")]


def test_confirm_topup_credits_and_marks_processed(processor, repository, ledger, provider, event_payload):
    repository.add("user-1")
    ledger.add_business(7, invoice_credits=1)
    intent = provider.add_payment_intent(147, _topup_metadata())

    confirmation = processor.confirm_topup("user-1", intent.id)

    assert confirmation.credited is True
    assert confirmation.balance == 4
    assert confirmation.kind is CreditKind.INVOICE
    assert provider.payment_intents[intent.id].is_processed is True

    # The webhook arriving afterwards finds the marker and leaves the balance alone.
    result = processor.process(
        _event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": _topup_metadata()})
    )
    assert result.detail == "already_processed"
    assert ledger.balance(7) == 4


def test_confirm_topup_after_webhook_reports_balance(processor, ledger, provider, event_payload):
    ledger.add_business(7)
    intent = provider.add_payment_intent(147, _topup_metadata())
    processor.process(
        _event(event_payload, "payment_intent.succeeded", {"id": intent.id, "metadata": _topup_metadata()})
    )

    confirmation = processor.confirm_topup("user-1", intent.id)

    assert confirmation.credited is False
    assert confirmation.balance == 3
    assert ledger.balance(7) == 3


def test_confirm_topup_rejects_unfinished_payment(processor, ledger, provider):
    ledger.add_business(7)
    intent = provider.add_payment_intent(147, _topup_metadata(), status="requires_payment_method")

    with pytest.raises(TopupRejected):
        processor.confirm_topup("user-1", intent.id)
    assert ledger.balance(7) == 0


def test_confirm_topup_rejects_other_payment_types(processor, provider):
    intent = provider.add_payment_intent(500, {"type": "invoice", "userId": "user-1"})

    with pytest.raises(TopupRejected):
        processor.confirm_topup("user-1", intent.id)


@pytest.mark.parametrize("payment_intent_id", ["pi_missing", "foreign"])
def test_confirm_topup_hides_unknown_or_foreign_payments(processor, ledger, provider, payment_intent_id):
    ledger.add_business(7, owner_id="user-2")
    foreign = provider.add_payment_intent(147, _topup_metadata(userId="user-2"))

    with pytest.raises(PaymentNotFoundError):
        processor.confirm_topup("user-1", foreign.id if payment_intent_id == "foreign" else payment_intent_id)
    assert ledger.balance(7) == 0


def test_confirm_topup_for_deleted_business(processor, provider):
    intent = provider.add_payment_intent(147, _topup_metadata(businessId="404"))

    with pytest.raises(SubAccountNotFoundError):
        processor.confirm_topup("user-1", intent.id)
    assert "processed" not in provider.payment_intents[intent.id].metadata
