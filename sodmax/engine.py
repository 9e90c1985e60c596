"""
Accrual Engine and Transaction Recorder.

Mined SOD accumulates on a per-account progress counter. Every time the
counter reaches the conversion threshold, a fixed USDT reward is credited
and exactly one threshold is taken off the counter; the remainder carries
into the next cycle. An accrual large enough to cross the threshold several
times converts once per crossing in the same call.

All steps of one call (balances, counter, audit entries) are staged on a
LedgerUpdate and committed with a single compare-and-swap. A stale version
means another writer got there first: re-read and try again, a bounded
number of times.
"""

import logging
import math
import threading
import time
import weakref
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from .config import Settings, get_settings
from .errors import ConflictError, InsufficientFundsError, InvalidArgumentError, UnavailableError
from .models import (
    Account,
    AccrualResult,
    Currency,
    LedgerUpdate,
    RedemptionResult,
    Transaction,
    TransactionKind,
    to_usdt,
    utcnow,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)


def validate_amount(amount: Any, allow_negative: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidArgumentError(f"Amount must be an integer, got {amount!r}")
    if isinstance(amount, float):
        if not math.isfinite(amount) or not amount.is_integer():
            raise InvalidArgumentError(f"Amount must be a finite whole number, got {amount!r}")
        amount = int(amount)
    if amount < 0 and not allow_negative:
        raise InvalidArgumentError(f"Amount must not be negative, got {amount}")
    return amount


class TransactionRecorder:
    def __init__(self, store: LedgerStore, page_size: int = 20):
        self.store = store
        self.page_size = page_size

    def build(
        self,
        account_id: str,
        kind: TransactionKind,
        amount: int,
        note: str = "",
        currency: Currency = Currency.SOD,
    ) -> Transaction:
        return Transaction(account_id=account_id, kind=kind, amount=amount, currency=currency, note=note)

    def record(
        self,
        update: LedgerUpdate,
        account_id: str,
        kind: TransactionKind,
        amount: int,
        note: str = "",
        currency: Currency = Currency.SOD,
    ) -> Transaction:
        """Stage an entry on `update`; it persists only if the update commits."""
        transaction = self.build(account_id, kind, amount, note, currency)
        update.transactions.append(transaction)
        return transaction

    def list_transactions(self, account_id: str, limit: Optional[int] = None) -> Iterator[Transaction]:
        limit = self.page_size if limit is None else limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidArgumentError(f"Limit must be a positive integer, got {limit!r}")
        return iter(tuple(self.store.list_transactions(account_id, limit)))


class AccrualEngine:
    def __init__(
        self,
        store: LedgerStore,
        recorder: Optional[TransactionRecorder] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.recorder = recorder or TransactionRecorder(store, self.settings.transaction_page_size)
        # Entries vanish once no call holds the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @property
    def threshold(self) -> int:
        return self.settings.conversion_threshold

    @property
    def reward_per_threshold(self) -> int:
        return self.settings.reward_per_threshold

    @contextmanager
    def _account_lock(self, account_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
        if not lock.acquire(timeout=self.settings.store_timeout_seconds):
            raise UnavailableError(f"Timed out waiting for account {account_id}")
        try:
            yield
        finally:
            lock.release()

    def _commit(self, account_id: str, plan: Callable[[LedgerUpdate], Any]) -> tuple[LedgerUpdate, Account, Any]:
        """Read fresh state, let `plan` stage changes, commit; retry on conflict."""
        attempts = self.settings.conflict_retries
        with self._account_lock(account_id):
            for attempt in range(1, attempts + 1):
                account = self.store.get_account(account_id)
                progress = self.store.get_progress(account_id)
                update = LedgerUpdate(account=account, progress=progress, expected_version=account.version)
                outcome = plan(update)
                try:
                    committed = self.store.commit(update)
                except ConflictError:
                    logger.warning(
                        "Ledger conflict on account %s (attempt %d/%d)", account_id, attempt, attempts
                    )
                    if attempt < attempts:
                        time.sleep(self.settings.retry_backoff_seconds * 2 ** (attempt - 1))
                    continue
                return update, committed, outcome

        raise UnavailableError(
            f"Account {account_id} is busy, try again later",
            {"attempts": attempts},
        )

    def apply_accrual(self, account_id: str, amount: Any) -> AccrualResult:
        amount = validate_amount(amount)

        def plan(update: LedgerUpdate) -> int:
            account, progress = update.account, update.progress
            now = utcnow()
            if account.last_accrual_at is None or account.last_accrual_at.date() != now.date():
                account.daily_accrued = 0

            account.primary_balance += amount
            account.lifetime_accrued += amount
            account.daily_accrued += amount
            account.last_accrual_at = now
            self.recorder.record(
                update, account_id, TransactionKind.ACCRUAL, amount, f"Mining (+{amount} SOD)"
            )

            progress.progress += amount
            conversions, progress.progress = divmod(progress.progress, self.threshold)
            if conversions:
                reward = conversions * self.reward_per_threshold
                account.secondary_balance += reward
                self.recorder.record(
                    update,
                    account_id,
                    TransactionKind.CONVERSION_REWARD,
                    reward,
                    f"USDT reward (+{to_usdt(reward)} USDT)",
                    Currency.USDT,
                )
            return conversions

        update, committed, conversions = self._commit(account_id, plan)
        if conversions:
            logger.info("Account %s converted %d threshold(s) to USDT", account_id, conversions)

        return AccrualResult(
            account_id=account_id,
            primary_balance=committed.primary_balance,
            secondary_balance=committed.secondary_balance,
            progress=update.progress.progress,
            converted=conversions > 0,
            conversions=conversions,
            transactions=list(update.transactions),
        )

    def apply_adjustment(self, account_id: str, delta: Any, note: str = "") -> Account:
        delta = validate_amount(delta, allow_negative=True)

        def plan(update: LedgerUpdate) -> None:
            account = update.account
            if account.primary_balance + delta < 0:
                raise InsufficientFundsError(
                    f"Adjustment of {delta} SOD would overdraw account {account_id}",
                    {"balance": account.primary_balance, "delta": delta},
                )
            account.primary_balance += delta
            self.recorder.record(
                update, account_id, TransactionKind.MANUAL_ADJUSTMENT, delta,
                note or f"Manual adjustment ({delta:+d} SOD)",
            )

        _, committed, _ = self._commit(account_id, plan)
        logger.info("Account %s adjusted by %d SOD", account_id, delta)
        return committed

    def redeem(self, account_id: str, amount: Any) -> RedemptionResult:
        """Buy `amount` micro-USDT with SOD at the fixed redemption rate."""
        amount = validate_amount(amount)
        if amount == 0:
            raise InvalidArgumentError("Redemption amount must be positive")
        cost = amount * self.settings.redemption_rate

        def plan(update: LedgerUpdate) -> None:
            account = update.account
            if account.primary_balance < cost:
                raise InsufficientFundsError(
                    f"Not enough SOD. Required: {cost} SOD",
                    {"balance": account.primary_balance, "required": cost},
                )
            account.primary_balance -= cost
            account.secondary_balance += amount
            self.recorder.record(
                update, account_id, TransactionKind.REDEMPTION, -cost, f"Redeemed for USDT (-{cost} SOD)"
            )
            self.recorder.record(
                update, account_id, TransactionKind.REDEMPTION, amount,
                f"Redeemed USDT (+{to_usdt(amount)} USDT)", Currency.USDT,
            )

        update, committed, _ = self._commit(account_id, plan)
        return RedemptionResult(
            account_id=account_id,
            redeemed=amount,
            primary_debited=cost,
            primary_balance=committed.primary_balance,
            secondary_balance=committed.secondary_balance,
            transactions=list(update.transactions),
        )
