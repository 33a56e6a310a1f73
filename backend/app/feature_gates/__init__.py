"""Feature gating utilities enforcing plan allowances and prepaid credits."""
from .enforcement import LimitEnforcer, UsageDecision, UsageReason, require_usage
from .exceptions import NEEDS_PAYMENT, FeatureGateError
from .quota import MonthlyQuotaEvaluation, evaluate_monthly_quota, monthly_window

__all__ = [
    "FeatureGateError",
    "LimitEnforcer",
    "MonthlyQuotaEvaluation",
    "NEEDS_PAYMENT",
    "UsageDecision",
    "UsageReason",
    "evaluate_monthly_quota",
    "monthly_window",
    "require_usage",
]
