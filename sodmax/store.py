"""
Ledger Store: durable home of accounts, progress counters and transactions.

`LedgerStore` is the interface the engine and facade talk to. Multi-step
balance changes reach the store only through `commit`, a compare-and-swap
on the account version, so concurrent writers can never interleave a
read-modify-write.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from .errors import AccountNotFoundError, ConflictError, UnavailableError
from .models import Account, LedgerUpdate, ProgressCounter, Transaction, TransactionKind, utcnow

logger = logging.getLogger(__name__)

# The only account columns a ledger update may change.
LEDGER_FIELDS = (
    "primary_balance",
    "secondary_balance",
    "lifetime_accrued",
    "daily_accrued",
    "last_accrual_at",
)


class LedgerStore(ABC):
    @abstractmethod
    def get_account(self, account_id: str) -> Account:
        ...

    @abstractmethod
    def get_progress(self, account_id: str) -> ProgressCounter:
        ...

    @abstractmethod
    def find_account_by_email(self, email: str) -> Optional[Account]:
        ...

    @abstractmethod
    def create_account(self, account: Account, progress: ProgressCounter, transaction: Transaction) -> Account:
        """Insert an account, its counter and its opening entry as one unit.

        Raises ConflictError with details["field"] naming the duplicate
        column ("id", "email" or "referral_code").
        """

    @abstractmethod
    def commit(self, update: LedgerUpdate) -> Account:
        """Apply `update` iff the stored account version still matches.

        Only LEDGER_FIELDS are taken from `update.account`, and only entries
        for that account are appended. Returns the stored account with its
        bumped version. Raises
        ConflictError on a stale version and AccountNotFoundError if the
        account is gone.
        """

    @abstractmethod
    def list_transactions(self, account_id: str, limit: int) -> list[Transaction]:
        ...

    @abstractmethod
    def list_accounts(self) -> list[Account]:
        ...

    @abstractmethod
    def count_accounts(self) -> int:
        ...

    @abstractmethod
    def sum_lifetime_accrued(self) -> int:
        ...

    @abstractmethod
    def sum_transactions(self, kind: TransactionKind) -> int:
        ...

    @abstractmethod
    def count_active_since(self, since: datetime) -> int:
        ...

    @abstractmethod
    def count_referred(self) -> int:
        ...


class InMemoryLedgerStore(LedgerStore):
    """Process-local store with the same atomicity contract as the hosted one."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self.accounts: dict[str, Account] = {}
        self.progress: dict[str, ProgressCounter] = {}
        self.transactions: list[Transaction] = []
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise UnavailableError("Ledger store did not respond in time")
        try:
            yield
        finally:
            self._lock.release()

    def get_account(self, account_id: str) -> Account:
        with self._locked():
            account = self.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            return account.model_copy(deep=True)

    def get_progress(self, account_id: str) -> ProgressCounter:
        with self._locked():
            progress = self.progress.get(account_id)
            if progress is None:
                raise AccountNotFoundError(f"Progress for account {account_id} not found")
            return progress.model_copy(deep=True)

    def find_account_by_email(self, email: str) -> Optional[Account]:
        with self._locked():
            for account in self.accounts.values():
                if account.email == email:
                    return account.model_copy(deep=True)
            return None

    def create_account(self, account: Account, progress: ProgressCounter, transaction: Transaction) -> Account:
        with self._locked():
            if account.id in self.accounts:
                raise ConflictError(f"Account {account.id} already exists", {"field": "id"})
            for existing in self.accounts.values():
                if existing.email == account.email:
                    raise ConflictError("Email already registered", {"field": "email"})
                if existing.referral_code == account.referral_code:
                    raise ConflictError("Referral code already taken", {"field": "referral_code"})

            self.accounts[account.id] = account.model_copy(deep=True)
            self.progress[account.id] = progress.model_copy(deep=True)
            self.transactions.append(transaction)
            return account.model_copy(deep=True)

    def commit(self, update: LedgerUpdate) -> Account:
        account_id = update.account.id
        with self._locked():
            current = self.accounts.get(account_id)
            if current is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            if current.version != update.expected_version:
                raise ConflictError(
                    f"Account {account_id} changed concurrently",
                    {"expected": update.expected_version, "actual": current.version},
                )

            changes = {field: getattr(update.account, field) for field in LEDGER_FIELDS}
            changes["version"] = current.version + 1
            stored = current.model_copy(deep=True, update=changes)
            self.accounts[account_id] = stored
            self.progress[account_id] = update.progress.model_copy(deep=True, update={"updated_at": utcnow()})
            self.transactions.extend(t for t in update.transactions if t.account_id == account_id)
            return stored.model_copy(deep=True)

    def list_transactions(self, account_id: str, limit: int) -> list[Transaction]:
        with self._locked():
            entries = [t for t in reversed(self.transactions) if t.account_id == account_id]
        entries = sorted(entries, key=lambda t: t.created_at, reverse=True)
        return entries[:limit]

    def list_accounts(self) -> list[Account]:
        with self._locked():
            accounts = [a.model_copy(deep=True) for a in self.accounts.values()]
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        return accounts

    def count_accounts(self) -> int:
        with self._locked():
            return len(self.accounts)

    def sum_lifetime_accrued(self) -> int:
        with self._locked():
            return sum(a.lifetime_accrued for a in self.accounts.values())

    def sum_transactions(self, kind: TransactionKind) -> int:
        with self._locked():
            return sum(t.amount for t in self.transactions if t.kind == kind)

    def count_active_since(self, since: datetime) -> int:
        with self._locked():
            return sum(
                1 for a in self.accounts.values()
                if a.last_accrual_at is not None and a.last_accrual_at >= since
            )

    def count_referred(self) -> int:
        with self._locked():
            return sum(1 for a in self.accounts.values() if a.invited_by)
