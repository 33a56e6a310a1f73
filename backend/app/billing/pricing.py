"""Resolution of provider price ids for plan and billing interval pairs."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .catalog import get_plan_definition, to_minor_units
from .config import BillingConfig
from .exceptions import PlanChangeRejected
from .interfaces import PaymentProvider
from .models import METADATA_PLAN, BillingInterval, PlanKey

logger = logging.getLogger("billing")


@dataclass
class PriceResolver:
    """Finds or creates the recurring provider price for a plan.

    Statically configured price ids win. Otherwise the product named
    ``"<prefix> <Plan> Plan"`` is looked up (and created when missing) and an
    active recurring price with the exact interval and amount is reused or
    created.
    """

    provider: PaymentProvider
    config: BillingConfig

    def product_name(self, plan: PlanKey) -> str:
        definition = get_plan_definition(plan)
        return f"{self.config.product_name_prefix} {definition.display_name} Plan"

    def resolve(self, plan: PlanKey, interval: BillingInterval) -> str:
        definition = get_plan_definition(plan)
        if not definition.is_paid:
            raise PlanChangeRejected(f"Plan {plan.value} cannot be purchased")

        static_id = self.config.static_price_id(plan, interval)
        if static_id:
            return static_id

        name = self.product_name(plan)
        product = self.provider.find_product(name)
        if product is None:
            product = self.provider.create_product(name=name, metadata={METADATA_PLAN: plan.value})
            logger.info("Created provider product %s for plan %s", product.id, plan.value)

        amount = to_minor_units(definition.price_for(interval), self.config.currency)
        wanted_interval = interval.provider_interval
        for price in self.provider.list_recurring_prices(product.id):
            if (
                price.active
                and price.interval == wanted_interval
                and price.unit_amount == amount
                and price.currency.lower() == self.config.currency
            ):
                return price.id

        price = self.provider.create_recurring_price(
            product_id=product.id,
            unit_amount=amount,
            currency=self.config.currency,
            interval=wanted_interval,
            metadata={METADATA_PLAN: plan.value},
        )
        logger.info(
            "Created provider price %s plan=%s interval=%s amount=%s",
            price.id,
            plan.value,
            wanted_interval,
            amount,
        )
        return price.id


__all__ = ["PriceResolver"]
