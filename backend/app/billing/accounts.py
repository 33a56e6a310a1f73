"""Compare-and-set helpers for account updates."""
from __future__ import annotations

import logging
from typing import Callable, Optional

from .exceptions import AccountNotFoundError, ConcurrentUpdateError
from .interfaces import AccountRepository
from .models import Account, AccountChanges

logger = logging.getLogger("billing")

ChangeComputer = Callable[[Account], Optional[AccountChanges]]


def apply_account_update(
    repository: AccountRepository,
    account: Account,
    compute: ChangeComputer,
    *,
    attempts: int = 3,
) -> Account:
    """Apply the changes produced by ``compute`` using optimistic concurrency.

    ``compute`` is called with the freshest known copy of the account and
    returns the changes to write, or ``None`` when nothing needs to change.
    When another writer bumps ``version`` first the account is re-read and
    ``compute`` runs again, up to ``attempts`` times.
    """

    current = account
    for attempt in range(1, attempts + 1):
        changes = compute(current)
        if changes is None or not changes.differs_from(current):
            return current

        updated = repository.update_account_fields(
            current.account_id, changes, expected_version=current.version
        )
        if updated is not None:
            return updated

        logger.info(
            "Account %s changed concurrently (attempt %s/%s); retrying",
            current.account_id,
            attempt,
            attempts,
        )
        refreshed = repository.get_account_by_user_id(current.account_id)
        if refreshed is None:
            raise AccountNotFoundError(f"Account {current.account_id} no longer exists")
        current = refreshed

    raise ConcurrentUpdateError(
        f"Account {account.account_id} kept changing after {attempts} attempts"
    )


def try_account_update(
    repository: AccountRepository, account: Account, changes: AccountChanges
) -> Optional[Account]:
    """Single compare-and-set attempt; ``None`` means another writer got there first."""

    if not changes.differs_from(account):
        return account
    return repository.update_account_fields(
        account.account_id, changes, expected_version=account.version
    )


__all__ = ["ChangeComputer", "apply_account_update", "try_account_update"]
