"""Creation of one-off payment intents for prepaid credit purchases."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from pydantic import BaseModel, ConfigDict

from ..credits.ledger import CreditLedger
from ..credits.models import CreditKind
from .catalog import get_plan_definition, to_minor_units
from .config import BillingConfig
from .exceptions import (
    AccountNotFoundError,
    ProviderConfigurationError,
    SubAccountNotFoundError,
    TopupRejected,
)
from .interfaces import AccountRepository, PaymentProvider
from .models import (
    METADATA_BUSINESS_ID,
    METADATA_CREDIT_KIND,
    METADATA_QUANTITY,
    METADATA_TYPE,
    METADATA_USER_ID,
    PaymentIntentPurpose,
)

logger = logging.getLogger("billing")

MIN_TOPUP_QUANTITY = 1
MAX_TOPUP_QUANTITY = 100


class TopupIntent(BaseModel):
    """Client secret and pricing for a pending credit purchase."""

    payment_intent_id: str
    client_secret: str
    amount: int
    currency: str
    unit_price: Decimal
    quantity: int
    kind: CreditKind

    model_config = ConfigDict(frozen=True)


class TopupConfirmation(BaseModel):
    """Balance after a client confirmed a completed credit purchase."""

    payment_intent_id: str
    business_id: int
    kind: CreditKind
    quantity: int
    credited: bool
    balance: int

    model_config = ConfigDict(frozen=True)


@dataclass
class CreditTopupService:
    repository: AccountRepository
    ledger: CreditLedger
    provider: PaymentProvider
    config: BillingConfig

    def create_topup_intent(
        self,
        account_id: str,
        sub_account_id: int,
        kind: Union[CreditKind, str] = CreditKind.INVOICE,
        quantity: int = 1,
    ) -> TopupIntent:
        try:
            credit_kind = CreditKind(kind)
        except ValueError as exc:
            raise TopupRejected(f"Unknown credit kind: {kind!r}") from exc
        if not MIN_TOPUP_QUANTITY <= quantity <= MAX_TOPUP_QUANTITY:
            raise TopupRejected(
                f"quantity must be between {MIN_TOPUP_QUANTITY} and {MAX_TOPUP_QUANTITY}"
            )

        account = self.repository.get_account_by_user_id(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

        definition = get_plan_definition(account.plan)
        if definition.unlimited:
            raise TopupRejected(f"The {definition.display_name} plan already includes unlimited usage")
        if not self.ledger.sub_account_exists(sub_account_id, owner_id=account.account_id):
            raise SubAccountNotFoundError(f"Business {sub_account_id} not found")

        amount = to_minor_units(definition.price_per_extra_credit, self.config.currency) * quantity
        intent = self.provider.create_payment_intent(
            amount=amount,
            currency=self.config.currency,
            customer_id=account.provider_customer_id,
            metadata={
                METADATA_TYPE: PaymentIntentPurpose.CREDIT_TOPUP.value,
                METADATA_USER_ID: account.account_id,
                METADATA_BUSINESS_ID: str(sub_account_id),
                METADATA_CREDIT_KIND: credit_kind.value,
                METADATA_QUANTITY: str(quantity),
            },
        )
        if not intent.client_secret:
            raise ProviderConfigurationError(f"Payment intent {intent.id} returned no client secret")

        logger.info(
            "Created credit top-up intent %s account=%s business=%s kind=%s quantity=%s amount=%s",
            intent.id,
            account.account_id,
            sub_account_id,
            credit_kind.value,
            quantity,
            amount,
        )
        return TopupIntent(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=amount,
            currency=self.config.currency,
            unit_price=definition.price_per_extra_credit,
            quantity=quantity,
            kind=credit_kind,
        )


__all__ = [
    "CreditTopupService",
    "MAX_TOPUP_QUANTITY",
    "MIN_TOPUP_QUANTITY",
    "TopupConfirmation",
    "TopupIntent",
]
