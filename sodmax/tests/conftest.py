from typing import Optional
from uuid import uuid4

import pytest

from sodmax.accounts import AccountService
from sodmax.auth import InMemoryAuthProvider
from sodmax.config import Settings
from sodmax.engine import AccrualEngine
from sodmax.models import Account, ProgressCounter, Transaction, TransactionKind
from sodmax.store import InMemoryLedgerStore


def seed_account(
    store: InMemoryLedgerStore,
    account_id: Optional[str] = None,
    primary: int = 0,
    secondary: int = 0,
    progress: int = 0,
    is_admin: bool = False,
    invited_by: Optional[str] = None,
) -> Account:
    account_id = account_id or str(uuid4())
    account = Account(
        id=account_id,
        email=f"{account_id}@example.com",
        display_name=f"Miner {account_id}",
        primary_balance=primary,
        secondary_balance=secondary,
        is_admin=is_admin,
        referral_code=uuid4().hex[:8].upper(),
        invited_by=invited_by,
    )
    opening = Transaction(account_id=account_id, kind=TransactionKind.ACCRUAL, amount=primary, note="seed")
    return store.create_account(account, ProgressCounter(account_id=account_id, progress=progress), opening)


def promote_to_admin(store: InMemoryLedgerStore, account_id: str) -> None:
    # Ledger commits never touch the admin flag, so write the row directly.
    with store._locked():
        store.accounts[account_id] = store.accounts[account_id].model_copy(update={"is_admin": True})


@pytest.fixture
def settings() -> Settings:
    return Settings(backend="memory", retry_backoff_seconds=0, store_timeout_seconds=2)


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore(timeout=2)


@pytest.fixture
def auth() -> InMemoryAuthProvider:
    return InMemoryAuthProvider(iterations=1_000)


@pytest.fixture
def engine(store, settings) -> AccrualEngine:
    return AccrualEngine(store, settings=settings)


@pytest.fixture
def service(store, auth, engine, settings) -> AccountService:
    return AccountService(store, auth, engine=engine, settings=settings)
