"""Persistence layer for billing accounts."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, Optional

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .models import Account, AccountChanges, PlanKey

_ACCOUNT_COLUMNS = (
    "account_id",
    "email",
    "name",
    "plan",
    "trial_used",
    "provider_customer_id",
    "provider_subscription_id",
    "cancel_at_period_end",
    "period_end",
    "version",
    "updated_at",
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


@contextmanager
def dict_cursor(conn: Optional[PgConnection] = None) -> Iterable[PgCursor]:
    """Yield a ``RealDictCursor`` inside :func:`managed_connection`."""

    with managed_connection(conn) as (connection, _managed):
        cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        try:
            yield cursor
        finally:
            cursor.close()


def _row_to_account(row: dict) -> Account:
    return Account(
        account_id=str(row["account_id"]),
        email=row.get("email"),
        name=row.get("name"),
        plan=PlanKey.parse(row.get("plan")) or PlanKey.FREE,
        trial_used=bool(row.get("trial_used")),
        provider_customer_id=row.get("provider_customer_id"),
        provider_subscription_id=row.get("provider_subscription_id"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        period_end=row.get("period_end"),
        version=int(row["version"]),
        updated_at=row["updated_at"],
    )


def _column_value(value: object) -> object:
    if isinstance(value, PlanKey):
        return value.value
    return value


class PostgresAccountRepository:
    """Concrete repository persisting billing accounts in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def _select(self, column: str, value: str) -> Optional[Account]:
        query = sql.SQL("SELECT {columns} FROM billing_accounts WHERE {column} = %s LIMIT 1").format(
            columns=sql.SQL(", ").join(sql.Identifier(name) for name in _ACCOUNT_COLUMNS),
            column=sql.Identifier(column),
        )
        with dict_cursor(self._conn) as cursor:
            cursor.execute(query, (value,))
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def get_account_by_user_id(self, account_id: str) -> Optional[Account]:
        return self._select("account_id", account_id)

    def get_account_by_provider_customer_id(self, customer_id: str) -> Optional[Account]:
        return self._select("provider_customer_id", customer_id)

    def update_account_fields(
        self,
        account_id: str,
        changes: AccountChanges,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[Account]:
        """Write the explicitly set fields of ``changes`` and bump ``version``.

        When ``expected_version`` is given the update only applies if the row
        still carries that version; otherwise ``None`` is returned.
        """

        fields = changes.as_fields()
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        ]
        assignments.append(sql.SQL("version = version + 1"))
        assignments.append(sql.SQL("updated_at = NOW()"))
        params = [_column_value(value) for value in fields.values()]

        conditions = [sql.SQL("account_id = %s")]
        params.append(account_id)
        if expected_version is not None:
            conditions.append(sql.SQL("version = %s"))
            params.append(expected_version)

        query = sql.SQL("UPDATE billing_accounts SET {assignments} WHERE {conditions} RETURNING {columns}").format(
            assignments=sql.SQL(", ").join(assignments),
            conditions=sql.SQL(" AND ").join(conditions),
            columns=sql.SQL(", ").join(sql.Identifier(name) for name in _ACCOUNT_COLUMNS),
        )
        with dict_cursor(self._conn) as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def mark_trial_used(self, account_id: str) -> Optional[Account]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                UPDATE billing_accounts
                SET trial_used = TRUE,
                    version = version + 1,
                    updated_at = NOW()
                WHERE account_id = %s
                RETURNING *
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None


__all__ = ["PostgresAccountRepository", "dict_cursor", "managed_connection"]
