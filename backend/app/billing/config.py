"""Billing configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from ..settings import to_bool, to_float, to_int, to_optional_str
from .models import BillingInterval, PlanKey

_PRICE_ENV_KEYS: Dict[Tuple[PlanKey, BillingInterval], str] = {
    (PlanKey.PROFESSIONAL, BillingInterval.MONTHLY): "STRIPE_PROFESSIONAL_PRICE_ID",
    (PlanKey.PROFESSIONAL, BillingInterval.YEARLY): "STRIPE_PROFESSIONAL_YEARLY_PRICE_ID",
    (PlanKey.ENTERPRISE, BillingInterval.MONTHLY): "STRIPE_ENTERPRISE_PRICE_ID",
    (PlanKey.ENTERPRISE, BillingInterval.YEARLY): "STRIPE_ENTERPRISE_YEARLY_PRICE_ID",
}


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the Stripe integration and plan change flow."""

    secret_key: Optional[str]
    webhook_secret: Optional[str]
    live_mode: bool
    api_version: str
    timeout_seconds: float
    trial_period_days: int
    currency: str
    product_name_prefix: str
    update_attempts: int
    static_price_ids: Dict[Tuple[PlanKey, BillingInterval], str] = field(default_factory=dict)

    def static_price_id(self, plan: PlanKey, interval: BillingInterval) -> Optional[str]:
        return self.static_price_ids.get((plan, interval))


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    live_mode = to_bool(env_mapping.get("STRIPE_LIVE_MODE"), default=False)
    key_name = "STRIPE_LIVE_SECRET_KEY" if live_mode else "STRIPE_TEST_SECRET_KEY"
    secret_key = to_optional_str(env_mapping.get(key_name)) or to_optional_str(
        env_mapping.get("STRIPE_SECRET_KEY")
    )

    static_price_ids = {}
    for pair, env_key in _PRICE_ENV_KEYS.items():
        price_id = to_optional_str(env_mapping.get(env_key))
        if price_id:
            static_price_ids[pair] = price_id

    return BillingConfig(
        secret_key=secret_key,
        webhook_secret=to_optional_str(env_mapping.get("STRIPE_WEBHOOK_SECRET")),
        live_mode=live_mode,
        api_version=env_mapping.get("STRIPE_API_VERSION") or "2024-06-20",
        timeout_seconds=max(1.0, to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0)),
        trial_period_days=max(0, to_int(env_mapping.get("BILLING_TRIAL_DAYS"), default=60)),
        currency=(env_mapping.get("BILLING_CURRENCY") or "usd").strip().lower(),
        product_name_prefix=(env_mapping.get("BILLING_PRODUCT_PREFIX") or "InvoiceFlow").strip(),
        update_attempts=max(1, to_int(env_mapping.get("BILLING_UPDATE_ATTEMPTS"), default=3)),
        static_price_ids=static_price_ids,
    )


__all__ = ["BillingConfig", "load_billing_config"]
