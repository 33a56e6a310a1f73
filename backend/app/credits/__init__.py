"""Prepaid usage credits scoped to businesses."""

from .ledger import CreditLedger, PostgresCreditLedger
from .models import CreditBalance, CreditKind

__all__ = ["CreditBalance", "CreditKind", "CreditLedger", "PostgresCreditLedger"]
