"""Usage authorization against plan allowances and prepaid credits."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..billing.catalog import get_plan_definition
from ..billing.exceptions import SubAccountNotFoundError
from ..billing.models import PlanKey
from ..credits.ledger import CreditLedger
from ..credits.models import CreditKind
from .exceptions import FeatureGateError
from .quota import evaluate_monthly_quota, monthly_window

logger = logging.getLogger("billing")


class UsageReason(str, Enum):
    UNLIMITED = "unlimited"
    WITHIN_QUOTA = "within_quota"
    CREDIT_CONSUMED = "credit_consumed"
    NEEDS_PAYMENT = "needs_payment"


@dataclass(frozen=True)
class UsageDecision:
    """Result of a pre-flight check for one credit-consuming action."""

    allowed: bool
    reason: UsageReason
    plan: PlanKey
    kind: CreditKind
    charged_credit: bool = False
    monthly_count: Optional[int] = None
    monthly_quota: Optional[int] = None
    remaining_credits: Optional[int] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "plan": self.plan.value,
            "kind": self.kind.value,
            "charged_credit": self.charged_credit,
            "monthly_count": self.monthly_count,
            "monthly_quota": self.monthly_quota,
            "remaining_credits": self.remaining_credits,
        }


@dataclass
class LimitEnforcer:
    """Allows, denies or charges one prepaid credit for a gated action.

    The monthly allowance is a live count of items created in the current
    calendar month. Beyond it one credit is consumed through a conditional
    decrement, so concurrent callers can never drive a balance below zero.
    """

    ledger: CreditLedger

    def authorize_usage(
        self,
        sub_account_id: int,
        plan: PlanKey,
        kind: CreditKind = CreditKind.INVOICE,
        now: Optional[datetime] = None,
        *,
        owner_id: Optional[str] = None,
    ) -> UsageDecision:
        if not self.ledger.sub_account_exists(sub_account_id, owner_id=owner_id):
            raise SubAccountNotFoundError(f"Business {sub_account_id} not found")

        definition = get_plan_definition(plan)
        if definition.unlimited:
            return UsageDecision(allowed=True, reason=UsageReason.UNLIMITED, plan=plan, kind=kind)

        monthly_count = 0
        if definition.monthly_quota:
            start, end = monthly_window(now)
            monthly_count = self.ledger.count_items_created(sub_account_id, kind, start, end)
        evaluation = evaluate_monthly_quota(used=monthly_count, quota=definition.monthly_quota, now=now)

        if evaluation.within_quota:
            return UsageDecision(
                allowed=True,
                reason=UsageReason.WITHIN_QUOTA,
                plan=plan,
                kind=kind,
                monthly_count=evaluation.used,
                monthly_quota=evaluation.quota,
            )

        remaining = self.ledger.decrement_if_positive(sub_account_id, kind)
        if remaining is None:
            logger.info(
                "Business %s is out of %s credits on plan %s (%s/%s this month)",
                sub_account_id,
                kind.value,
                plan.value,
                evaluation.used,
                evaluation.quota,
            )
            return UsageDecision(
                allowed=False,
                reason=UsageReason.NEEDS_PAYMENT,
                plan=plan,
                kind=kind,
                monthly_count=evaluation.used,
                monthly_quota=evaluation.quota,
                remaining_credits=0,
            )

        logger.info(
            "Consumed one %s credit for business %s; %s left",
            kind.value,
            sub_account_id,
            remaining,
        )
        return UsageDecision(
            allowed=True,
            reason=UsageReason.CREDIT_CONSUMED,
            plan=plan,
            kind=kind,
            charged_credit=True,
            monthly_count=evaluation.used,
            monthly_quota=evaluation.quota,
            remaining_credits=remaining,
        )


def require_usage(
    enforcer: LimitEnforcer,
    sub_account_id: int,
    plan: PlanKey,
    kind: CreditKind = CreditKind.INVOICE,
    *,
    now: Optional[datetime] = None,
    owner_id: Optional[str] = None,
) -> UsageDecision:
    """Authorize usage or raise :class:`FeatureGateError` with code ``needs_payment``."""

    decision = enforcer.authorize_usage(sub_account_id, plan, kind, now=now, owner_id=owner_id)
    if not decision.allowed:
        raise FeatureGateError.needs_payment(
            f"No {kind.value} credits left. Purchase more to continue.",
            plan=plan.value,
            kind=kind.value,
            monthly_count=decision.monthly_count,
            monthly_quota=decision.monthly_quota,
            price_per_credit=str(get_plan_definition(plan).price_per_extra_credit),
        )
    return decision
