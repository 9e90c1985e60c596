"""
SODmAX mining ledger

This package provides:
- Accrual of mined SOD with threshold-based USDT conversion
- Immutable transaction records committed atomically with balances
- An account facade over a hosted auth + database backend (Supabase)
- Typed errors surfaced as structured results
"""

from .accounts import AccountService
from .engine import AccrualEngine, TransactionRecorder
from .errors import ErrorKind, SodmaxError
from .models import (
    Account,
    AccrualResult,
    ProgressCounter,
    ServiceResult,
    Transaction,
    TransactionKind,
)
from .store import InMemoryLedgerStore, LedgerStore

__all__ = [
    "AccountService",
    "AccrualEngine",
    "TransactionRecorder",
    "ErrorKind",
    "SodmaxError",
    "Account",
    "AccrualResult",
    "ProgressCounter",
    "ServiceResult",
    "Transaction",
    "TransactionKind",
    "InMemoryLedgerStore",
    "LedgerStore",
]
