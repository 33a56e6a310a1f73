"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Metadata keys attached to provider objects created by the orchestrator.
METADATA_USER_ID = "userId"
METADATA_PLAN = "plan"
METADATA_BILLING_INTERVAL = "billingInterval"
METADATA_BUSINESS_ID = "businessId"
METADATA_CREDIT_KIND = "creditKind"
METADATA_QUANTITY = "quantity"
METADATA_TYPE = "type"
METADATA_PROCESSED = "processed"


class PlanKey(str, Enum):
    """Canonical identifiers for subscription plans."""

    FREE = "free"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, raw: object) -> Optional["PlanKey"]:
        """Map a metadata value onto a plan, returning ``None`` when unrecognized."""

        if not isinstance(raw, str):
            return None
        value = raw.strip().lower()
        aliases = {"free_user": "free", "pro": "professional"}
        value = aliases.get(value, value)
        try:
            return cls(value)
        except ValueError:
            return None


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def provider_interval(self) -> str:
        """Recurring interval name understood by the billing provider."""
        return "month" if self is BillingInterval.MONTHLY else "year"


class SubscriptionStatus(str, Enum):
    """Subscription states reported by the billing provider."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"

    @property
    def grants_entitlements(self) -> bool:
        return self in ENTITLED_STATUSES

    @property
    def is_stale(self) -> bool:
        """Whether a plan change should discard this subscription and start over."""
        return self in STALE_STATUSES


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
STALE_STATUSES = frozenset(
    {
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.PAUSED,
    }
)


class Account(BaseModel):
    """Billing and plan state for a single user."""

    account_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    plan: PlanKey = PlanKey.FREE
    trial_used: bool = False
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False
    period_end: Optional[datetime] = None
    version: int = Field(default=1, ge=1)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AccountChanges(BaseModel):
    """Partial update for an account; only explicitly set fields are written.

    ``trial_used`` is not a field here: it only ever moves to ``True``
    through :meth:`AccountRepository.mark_trial_used`.
    """

    plan: Optional[PlanKey] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def as_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    def differs_from(self, account: Account) -> bool:
        """Return ``True`` when applying these changes would modify ``account``."""

        return any(getattr(account, name) != value for name, value in self.as_fields().items())

    @field_validator("cancel_at_period_end")
    @classmethod
    def _reject_null_flag(cls, value: Optional[bool]) -> Optional[bool]:
        if value is None:
            raise ValueError("cancel_at_period_end cannot be cleared to null")
        return value


class IntentKind(str, Enum):
    """Kind of client secret handed back to the browser."""

    PAYMENT = "payment"
    SETUP = "setup"


class PlanChangeOutcome(str, Enum):
    UPGRADED = "upgraded"
    CLIENT_SECRET = "client_secret"


class PlanChangeResult(BaseModel):
    """Outcome of a plan change request."""

    outcome: PlanChangeOutcome
    plan: PlanKey
    billing_interval: BillingInterval
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    client_secret: Optional[str] = None
    intent_kind: Optional[IntentKind] = None
    trial_granted: bool = False

    model_config = ConfigDict(frozen=True)


class CancellationResult(BaseModel):
    """Subscriptions canceled on behalf of an account and the plan it left."""

    previous_plan: PlanKey
    plan: PlanKey = PlanKey.FREE
    canceled_subscription_ids: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def already_free(self) -> bool:
        return not self.canceled_subscription_ids


class ReactivationResult(BaseModel):
    plan: PlanKey
    subscription_id: str
    period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class PlanSyncResult(BaseModel):
    """Plan re-derived from the provider's live subscriptions."""

    plan: PlanKey
    previous_plan: PlanKey
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None

    model_config = ConfigDict(frozen=True)

    @property
    def changed(self) -> bool:
        return self.plan is not self.previous_plan


class ProviderCustomer(BaseModel):
    id: str
    email: Optional[str] = None
    default_payment_method: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def has_payment_method(self) -> bool:
        return bool(self.default_payment_method)


class ProviderProduct(BaseModel):
    id: str
    name: str

    model_config = ConfigDict(frozen=True)


class ProviderPrice(BaseModel):
    id: str
    product_id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: str = "usd"
    interval: Optional[str] = None
    active: bool = True

    model_config = ConfigDict(frozen=True)


class ProviderSubscription(BaseModel):
    """Provider-side subscription snapshot with the fields the engine reads."""

    id: str
    customer_id: Optional[str] = None
    status: SubscriptionStatus
    item_id: Optional[str] = None
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    setup_intent_client_secret: Optional[str] = None
    payment_intent_client_secret: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def plan(self) -> Optional[PlanKey]:
        return PlanKey.parse(self.metadata.get(METADATA_PLAN))


class ProviderSetupIntent(BaseModel):
    id: str
    client_secret: str

    model_config = ConfigDict(frozen=True)


class ProviderPaymentIntent(BaseModel):
    id: str
    status: str
    amount: int = 0
    currency: str = "usd"
    customer_id: Optional[str] = None
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def is_processed(self) -> bool:
        return self.metadata.get(METADATA_PROCESSED) == "true"

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class ProviderEventType(str, Enum):
    """Provider event types the webhook processor reconciles."""

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"


class PaymentIntentPurpose(str, Enum):
    """Value of the ``type`` metadata on one-off payment intents."""

    CREDIT_TOPUP = "credit_topup"


class ProviderEvent(BaseModel):
    """Verified provider event envelope."""

    id: str
    type: str
    data_object: Dict[str, Any] = Field(default_factory=dict)
    created: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProviderEvent":
        data = payload.get("data")
        data_object = data.get("object") if isinstance(data, dict) else None
        return cls(
            id=str(payload["id"]),
            type=str(payload["type"]),
            data_object=data_object if isinstance(data_object, dict) else {},
            created=payload.get("created"),
        )

    @property
    def event_type(self) -> Optional[ProviderEventType]:
        try:
            return ProviderEventType(self.type)
        except ValueError:
            return None

    @property
    def metadata(self) -> Dict[str, str]:
        return safe_metadata(self.data_object.get("metadata"))


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    IGNORED = "ignored"


class WebhookResult(BaseModel):
    """What the processor did with an event; always acknowledged to the provider."""

    event_id: str
    event_type: str
    outcome: WebhookOutcome
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_STARTED = "subscription_started"
    SUBSCRIPTION_UPGRADED = "subscription_upgraded"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    PLAN_SYNCED = "plan_synced"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CREDITS_PURCHASED = "credits_purchased"
    EVENT_UNRESOLVED = "event_unresolved"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    account_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


def safe_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse provider epoch seconds or ISO strings into aware datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")
