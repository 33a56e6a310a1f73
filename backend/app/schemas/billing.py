"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    BillingInterval,
    CancellationResult,
    IntentKind,
    PlanChangeOutcome,
    PlanChangeResult,
    PlanKey,
    PlanSyncResult,
    ReactivationResult,
    SubscriptionStatus,
    WebhookOutcome,
    WebhookResult,
)
from ..billing.topups import TopupConfirmation, TopupIntent
from ..credits.models import CreditBalance, CreditKind
from ..feature_gates import UsageDecision


class PlanChangeRequest(BaseModel):
    plan: str
    billing_interval: str = Field(alias="billingInterval", default=BillingInterval.MONTHLY.value)

    model_config = ConfigDict(populate_by_name=True)


class PlanChangeResponse(BaseModel):
    outcome: PlanChangeOutcome
    plan: PlanKey
    billing_interval: BillingInterval = Field(alias="billingInterval")
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    client_secret: Optional[str] = Field(alias="clientSecret", default=None)
    intent_kind: Optional[IntentKind] = Field(alias="intentKind", default=None)
    trial_granted: bool = Field(alias="trialGranted", default=False)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PlanChangeResult) -> "PlanChangeResponse":
        return cls(
            outcome=result.outcome,
            plan=result.plan,
            billing_interval=result.billing_interval,
            subscription_id=result.subscription_id,
            client_secret=result.client_secret,
            intent_kind=result.intent_kind,
            trial_granted=result.trial_granted,
        )


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: str = Field(alias="eventId")
    outcome: WebhookOutcome

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: WebhookResult) -> "WebhookAckResponse":
        return cls(event_id=result.event_id, outcome=result.outcome)


class TopupIntentRequest(BaseModel):
    business_id: int = Field(alias="businessId", gt=0)
    kind: str = CreditKind.INVOICE.value
    quantity: int = 1

    model_config = ConfigDict(populate_by_name=True)


class TopupIntentResponse(BaseModel):
    payment_intent_id: str = Field(alias="paymentIntentId")
    client_secret: str = Field(alias="clientSecret")
    amount: int
    currency: str
    unit_price: str = Field(alias="unitPrice")
    quantity: int
    kind: CreditKind

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_intent(cls, intent: TopupIntent) -> "TopupIntentResponse":
        return cls(
            payment_intent_id=intent.payment_intent_id,
            client_secret=intent.client_secret,
            amount=intent.amount,
            currency=intent.currency,
            unit_price=f"{intent.unit_price:.2f}",
            quantity=intent.quantity,
            kind=intent.kind,
        )


class CancellationResponse(BaseModel):
    plan: PlanKey
    previous_plan: PlanKey = Field(alias="previousPlan")
    already_free: bool = Field(alias="alreadyFree")
    canceled_subscription_ids: List[str] = Field(alias="canceledSubscriptionIds", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: CancellationResult) -> "CancellationResponse":
        return cls(
            plan=result.plan,
            previous_plan=result.previous_plan,
            already_free=result.already_free,
            canceled_subscription_ids=list(result.canceled_subscription_ids),
        )


class ReactivationResponse(BaseModel):
    plan: PlanKey
    subscription_id: str = Field(alias="subscriptionId")
    period_end: Optional[datetime] = Field(alias="periodEnd", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ReactivationResult) -> "ReactivationResponse":
        return cls(plan=result.plan, subscription_id=result.subscription_id, period_end=result.period_end)


class PlanSyncResponse(BaseModel):
    plan: PlanKey
    previous_plan: PlanKey = Field(alias="previousPlan")
    changed: bool
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    subscription_status: Optional[SubscriptionStatus] = Field(alias="subscriptionStatus", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PlanSyncResult) -> "PlanSyncResponse":
        return cls(
            plan=result.plan,
            previous_plan=result.previous_plan,
            changed=result.changed,
            subscription_id=result.subscription_id,
            subscription_status=result.subscription_status,
        )


class TopupConfirmRequest(BaseModel):
    payment_intent_id: str = Field(alias="paymentIntentId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class TopupConfirmResponse(BaseModel):
    payment_intent_id: str = Field(alias="paymentIntentId")
    business_id: int = Field(alias="businessId")
    kind: CreditKind
    quantity: int
    credited: bool
    balance: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_confirmation(cls, confirmation: TopupConfirmation) -> "TopupConfirmResponse":
        return cls(
            payment_intent_id=confirmation.payment_intent_id,
            business_id=confirmation.business_id,
            kind=confirmation.kind,
            quantity=confirmation.quantity,
            credited=confirmation.credited,
            balance=confirmation.balance,
        )


class UsageDecisionResponse(BaseModel):
    allowed: bool
    reason: str
    plan: PlanKey
    kind: CreditKind
    charged_credit: bool = Field(alias="chargedCredit")
    monthly_count: Optional[int] = Field(alias="monthlyCount", default=None)
    monthly_quota: Optional[int] = Field(alias="monthlyQuota", default=None)
    remaining_credits: Optional[int] = Field(alias="remainingCredits", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_decision(cls, decision: UsageDecision) -> "UsageDecisionResponse":
        return cls(
            allowed=decision.allowed,
            reason=decision.reason.value,
            plan=decision.plan,
            kind=decision.kind,
            charged_credit=decision.charged_credit,
            monthly_count=decision.monthly_count,
            monthly_quota=decision.monthly_quota,
            remaining_credits=decision.remaining_credits,
        )


class CreditBalanceResponse(BaseModel):
    business_id: int = Field(alias="businessId")
    balances: List[CreditBalance]

    model_config = ConfigDict(populate_by_name=True)


class TrialStatusResponse(BaseModel):
    has_used_trial: bool = Field(alias="hasUsedTrial")

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "CancellationResponse",
    "CreditBalanceResponse",
    "PlanChangeRequest",
    "PlanChangeResponse",
    "PlanSyncResponse",
    "ReactivationResponse",
    "TopupConfirmRequest",
    "TopupConfirmResponse",
    "TopupIntentRequest",
    "TopupIntentResponse",
    "TrialStatusResponse",
    "UsageDecisionResponse",
    "WebhookAckResponse",
]
