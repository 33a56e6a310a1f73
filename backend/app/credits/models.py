"""Domain models for prepaid usage credits."""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CreditKind(str, Enum):
    """Gated features that can be paid for with prepaid credits."""

    INVOICE = "invoice"
    EXPENSE = "expense"


class CreditBalance(BaseModel):
    """Prepaid balance a sub-account holds for one gated feature."""

    sub_account_id: int
    kind: CreditKind
    balance: int = Field(ge=0)

    model_config = ConfigDict(frozen=True)
