"""Prepaid credit balances and monthly usage counts per business."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Protocol

from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection

from ..billing.exceptions import SubAccountNotFoundError
from ..billing.repository import dict_cursor
from .models import CreditBalance, CreditKind

BALANCE_COLUMNS: Dict[CreditKind, str] = {
    CreditKind.INVOICE: "extra_invoice_credits",
    CreditKind.EXPENSE: "extra_expense_credits",
}

ITEM_TABLES: Dict[CreditKind, str] = {
    CreditKind.INVOICE: "invoices",
    CreditKind.EXPENSE: "expenses",
}


class CreditLedger(Protocol):
    """Atomic credit operations scoped to a business."""

    def sub_account_exists(self, sub_account_id: int, *, owner_id: Optional[str] = None) -> bool:
        """Whether the business exists (and belongs to ``owner_id`` when given)."""

    def get_balance(self, sub_account_id: int, kind: CreditKind) -> CreditBalance:
        """Return the balance, raising :class:`SubAccountNotFoundError` if unknown."""

    def decrement_if_positive(self, sub_account_id: int, kind: CreditKind) -> Optional[int]:
        """Consume one credit; return the new balance or ``None`` when none was left."""

    def increment(self, sub_account_id: int, kind: CreditKind, quantity: int) -> Optional[int]:
        """Add ``quantity`` credits; return the new balance or ``None`` if the business is unknown."""

    def count_items_created(
        self, sub_account_id: int, kind: CreditKind, start: datetime, end: datetime
    ) -> int:
        """Count items of ``kind`` created in ``[start, end)``."""


class PostgresCreditLedger:
    """Credit balances stored on the ``businesses`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def sub_account_exists(self, sub_account_id: int, *, owner_id: Optional[str] = None) -> bool:
        query = "SELECT 1 FROM businesses WHERE id = %s"
        params: list = [sub_account_id]
        if owner_id is not None:
            query += " AND user_id = %s"
            params.append(owner_id)
        with dict_cursor(self._conn) as cursor:
            cursor.execute(query + " LIMIT 1", params)
            return cursor.fetchone() is not None

    def get_balance(self, sub_account_id: int, kind: CreditKind) -> CreditBalance:
        query = sql.SQL("SELECT {column} AS balance FROM businesses WHERE id = %s").format(
            column=sql.Identifier(BALANCE_COLUMNS[kind])
        )
        with dict_cursor(self._conn) as cursor:
            cursor.execute(query, (sub_account_id,))
            row = cursor.fetchone()
        if row is None:
            raise SubAccountNotFoundError(f"Business {sub_account_id} not found")
        return CreditBalance(
            sub_account_id=sub_account_id, kind=kind, balance=max(0, int(row["balance"] or 0))
        )

    def decrement_if_positive(self, sub_account_id: int, kind: CreditKind) -> Optional[int]:
        column = sql.Identifier(BALANCE_COLUMNS[kind])
        query = sql.SQL(
            "UPDATE businesses SET {column} = {column} - 1 "
            "WHERE id = %s AND {column} > 0 RETURNING {column} AS balance"
        ).format(column=column)
        with dict_cursor(self._conn) as cursor:
            cursor.execute(query, (sub_account_id,))
            row = cursor.fetchone()
        return int(row["balance"]) if row else None

    def increment(self, sub_account_id: int, kind: CreditKind, quantity: int) -> Optional[int]:
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        column = sql.Identifier(BALANCE_COLUMNS[kind])
        query = sql.SQL(
            "UPDATE businesses SET {column} = COALESCE({column}, 0) + %s "
            "WHERE id = %s RETURNING {column} AS balance"
        ).format(column=column)
        with dict_cursor(self._conn) as cursor:
            cursor.execute(query, (quantity, sub_account_id))
            row = cursor.fetchone()
        return int(row["balance"]) if row else None

    def count_items_created(
        self, sub_account_id: int, kind: CreditKind, start: datetime, end: datetime
    ) -> int:
        query = sql.SQL(
            "SELECT COUNT(*) AS total FROM {table} "
            "WHERE business_id = %s AND created_at >= %s AND created_at < %s"
        ).format(table=sql.Identifier(ITEM_TABLES[kind]))
        with dict_cursor(self._conn) as cursor:
            cursor.execute(query, (sub_account_id, start, end))
            row = cursor.fetchone()
        return int(row["total"]) if row else 0


__all__ = ["BALANCE_COLUMNS", "CreditLedger", "ITEM_TABLES", "PostgresCreditLedger"]
