"""In-memory store of account balances, loaded from a JSON snapshot."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

VALIDATOR_ACCOUNT = "validator"


class NoSuchAccountError(LookupError):
    """Raised when an account is not present in the database."""

    def __init__(self, account: str) -> None:
        super().__init__("no such account")
        self.account = account


class NegativeBalanceError(ValueError):
    """Raised when an operation would leave a balance below zero."""

    def __init__(self, message: str = "operation causes balance to go negative") -> None:
        super().__init__(message)


class InvalidSnapshotError(ValueError):
    """Raised when an accounts snapshot cannot be used."""


def _snapshot_balance(value: object) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidSnapshotError("invalid balance data in accounts snapshot")
    return float(value)


@dataclass
class AccountsDb:
    """Accounts and their balances."""

    accounts: dict[str, float] = field(default_factory=dict)

    def balance(self, account: str) -> float:
        """Return the balance of ``account``; raise if it does not exist."""
        try:
            return self.accounts[account]
        except KeyError:
            raise NoSuchAccountError(account) from None

    def update_by(self, account: str, amount: float) -> None:
        """Change a balance by ``amount``, creating the account if needed.

        A new account starts at ``amount`` or at zero, whichever is larger.
        An existing balance that would go negative is left untouched and
        :class:`NegativeBalanceError` is raised.
        """
        try:
            current = self.balance(account)
        except NoSuchAccountError:
            self.accounts[account] = float(amount) if amount > 0 else 0.0
            return

        new_balance = current + amount
        if new_balance < 0:
            raise NegativeBalanceError()
        self.accounts[account] = new_balance

    def copy(self) -> AccountsDb:
        """Return an independent copy of the database."""
        return AccountsDb(dict(self.accounts))

    def earn(self, amount: float) -> None:
        """Credit the validator account with ``amount``."""
        self.accounts[VALIDATOR_ACCOUNT] = self.accounts.get(VALIDATOR_ACCOUNT, 0.0) + amount


def load_snapshot(path: str | os.PathLike[str]) -> AccountsDb:
    """Build a database from a JSON object mapping account names to balances.

    Every balance must be non-negative. The validator account is created
    with a zero balance when the snapshot does not hold it.
    """
    with open(path, encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise InvalidSnapshotError(f"malformed accounts snapshot: {exc}") from exc

    if not isinstance(data, dict):
        raise InvalidSnapshotError("accounts snapshot must be a JSON object")

    accounts = {name: _snapshot_balance(value) for name, value in data.items()}
    if any(balance < 0 for balance in accounts.values()):
        raise InvalidSnapshotError("invalid balance data in accounts snapshot")

    accounts.setdefault(VALIDATOR_ACCOUNT, 0.0)
    return AccountsDb(accounts)