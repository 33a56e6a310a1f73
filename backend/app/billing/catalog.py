"""Static catalog definitions for subscription plans and their usage limits."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from .models import BillingInterval, PlanKey


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a subscription plan, its list price and its usage allowance."""

    key: PlanKey
    display_name: str
    monthly_price: Decimal
    price_per_extra_credit: Decimal
    monthly_quota: Optional[int]
    yearly_price: Optional[Decimal] = None

    @property
    def is_paid(self) -> bool:
        return self.monthly_price > 0

    @property
    def unlimited(self) -> bool:
        return self.monthly_quota is None

    def price_for(self, interval: BillingInterval) -> Decimal:
        """List price for one billing period of ``interval``."""

        if interval is BillingInterval.MONTHLY:
            return self.monthly_price
        if self.yearly_price is not None:
            return self.yearly_price
        return self.monthly_price * 12


PLAN_CATALOG: Dict[PlanKey, PlanDefinition] = {
    PlanKey.FREE: PlanDefinition(
        key=PlanKey.FREE,
        display_name="Free",
        monthly_price=Decimal("0"),
        price_per_extra_credit=Decimal("0.99"),
        monthly_quota=0,
    ),
    PlanKey.PROFESSIONAL: PlanDefinition(
        key=PlanKey.PROFESSIONAL,
        display_name="Professional",
        monthly_price=Decimal("6.99"),
        yearly_price=Decimal("70.00"),
        price_per_extra_credit=Decimal("0.49"),
        monthly_quota=15,
    ),
    PlanKey.ENTERPRISE: PlanDefinition(
        key=PlanKey.ENTERPRISE,
        display_name="Enterprise",
        monthly_price=Decimal("15.99"),
        price_per_extra_credit=Decimal("0"),
        monthly_quota=None,
    ),
}


def get_plan_definition(plan_key: PlanKey) -> PlanDefinition:
    """Return a plan definition, raising if unsupported."""

    try:
        return PLAN_CATALOG[plan_key]
    except KeyError as exc:  # pragma: no cover - guarded by static catalog
        raise KeyError(f"Unknown plan key: {plan_key}") from exc


# Currencies the provider charges in whole units, without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


def minor_unit_exponent(currency: str) -> int:
    return 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Decimal, currency: str = "usd") -> int:
    """Convert a decimal currency amount into the provider's integer amount."""

    scale = Decimal(10) ** minor_unit_exponent(currency)
    return int((amount * scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str = "usd") -> Decimal:
    """Inverse of :func:`to_minor_units`."""

    exponent = minor_unit_exponent(currency)
    return (Decimal(amount) / (Decimal(10) ** exponent)).quantize(Decimal(1).scaleb(-exponent))


def format_amount(total: Decimal, currency: str = "usd") -> str:
    code = currency.lower()
    if code == "usd":
        return f"${total:.2f}"
    return f"{total:.{minor_unit_exponent(code)}f} {code.upper()}"


__all__ = [
    "PLAN_CATALOG",
    "PlanDefinition",
    "ZERO_DECIMAL_CURRENCIES",
    "format_amount",
    "from_minor_units",
    "get_plan_definition",
    "minor_unit_exponent",
    "to_minor_units",
]
