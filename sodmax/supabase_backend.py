"""
Supabase-backed Ledger Store and Authentication Provider.

Row reads go through PostgREST tables (`users`, `user_progress`,
`transactions`). Anything that must be atomic goes through RPC stored
procedures:

    register_account(p_user jsonb, p_progress jsonb, p_transaction jsonb)
        inserts all three rows in one transaction
    commit_ledger_update(p_expected_version int, p_user jsonb,
                         p_progress jsonb, p_transactions jsonb) -> boolean
        updates users/user_progress WHERE version = p_expected_version,
        bumps version, inserts the transactions, and returns false (without
        writing anything) when no row matched

`usdt_balance` and USDT transaction amounts are stored in micro-USDT. Both
functions are executable by the service role only, so the store client must
be built with the service-role key.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AuthApiError, AuthError, Client, create_client
from supabase.lib.client_options import ClientOptions

from .auth import AuthProvider
from .errors import (
    AccountNotFoundError,
    ConflictError,
    InvalidArgumentError,
    InvalidCredentialsError,
    SodmaxError,
    UnavailableError,
)
from .models import Account, AuthSession, LedgerUpdate, ProgressCounter, Transaction, TransactionKind
from .store import LedgerStore

logger = logging.getLogger(__name__)

NO_ROWS = "PGRST116"
UNIQUE_VIOLATION = "23505"

UNIQUE_FIELDS = ("referral_code", "email")


def account_to_row(account: Account) -> dict:
    return {
        "id": account.id,
        "email": account.email,
        "full_name": account.display_name,
        "sod_balance": account.primary_balance,
        "usdt_balance": account.secondary_balance,
        "total_mined": account.lifetime_accrued,
        "today_earnings": account.daily_accrued,
        "last_mining_time": account.last_accrual_at.isoformat() if account.last_accrual_at else None,
        "is_admin": account.is_admin,
        "referral_code": account.referral_code,
        "invited_by": account.invited_by,
        "mining_power": account.mining_power,
        "user_level": account.level,
        "created_at": account.created_at.isoformat(),
        "version": account.version,
    }


def row_to_account(row: dict) -> Account:
    return Account(
        id=row["id"],
        email=row["email"],
        display_name=row.get("full_name") or "",
        primary_balance=row.get("sod_balance") or 0,
        secondary_balance=row.get("usdt_balance") or 0,
        lifetime_accrued=row.get("total_mined") or 0,
        daily_accrued=row.get("today_earnings") or 0,
        last_accrual_at=row.get("last_mining_time"),
        is_admin=bool(row.get("is_admin")),
        referral_code=row["referral_code"],
        invited_by=row.get("invited_by"),
        mining_power=row.get("mining_power") or 10,
        level=row.get("user_level") or 1,
        created_at=row["created_at"],
        version=row.get("version") or 0,
    )


def progress_to_row(progress: ProgressCounter) -> dict:
    return {
        "user_id": progress.account_id,
        "usdt_progress": progress.progress,
        "updated_at": progress.updated_at.isoformat(),
    }


def row_to_progress(row: dict) -> ProgressCounter:
    data = {"account_id": row["user_id"], "progress": row.get("usdt_progress") or 0}
    if row.get("updated_at"):
        data["updated_at"] = row["updated_at"]
    return ProgressCounter(**data)


def transaction_to_row(transaction: Transaction) -> dict:
    return {
        "id": transaction.id,
        "user_id": transaction.account_id,
        "type": transaction.kind.value,
        "amount": transaction.amount,
        "currency": transaction.currency.value,
        "description": transaction.note,
        "status": transaction.status.value,
        "created_at": transaction.created_at.isoformat(),
    }


def row_to_transaction(row: dict) -> Transaction:
    return Transaction(
        id=row["id"],
        account_id=row["user_id"],
        kind=TransactionKind(row["type"]),
        amount=row["amount"],
        currency=row.get("currency") or "SOD",
        note=row.get("description") or "",
        status=row.get("status") or "completed",
        created_at=row["created_at"],
    )


def classify_api_error(exc: APIError) -> SodmaxError:
    code = getattr(exc, "code", None)
    message = getattr(exc, "message", None) or str(exc)
    if code == NO_ROWS:
        return AccountNotFoundError(message, {"code": code})
    if code == UNIQUE_VIOLATION:
        details = {"code": code}
        blob = f"{message} {getattr(exc, 'details', '') or ''}"
        for field in UNIQUE_FIELDS:
            if field in blob:
                details["field"] = field
                break
        return ConflictError(message, details)
    return UnavailableError(message, {"code": code})


class SupabaseLedgerStore(LedgerStore):
    def __init__(self, client: Client):
        self.client = client

    def _execute(self, query: Any) -> Any:
        try:
            return query.execute()
        except APIError as exc:
            error = classify_api_error(exc)
            log = logger.info if isinstance(error, (AccountNotFoundError, ConflictError)) else logger.error
            log("Supabase query failed: %s", error.message)
            raise error from exc
        except httpx.TimeoutException as exc:
            logger.error("Supabase query timed out")
            raise UnavailableError("Ledger store did not respond in time") from exc
        except httpx.HTTPError as exc:
            logger.error("Supabase transport error: %s", exc)
            raise UnavailableError("Ledger store is unreachable") from exc

    def _single_row(self, table: str, column: str, value: str) -> Optional[dict]:
        response = self._execute(self.client.table(table).select("*").eq(column, value).limit(1))
        return response.data[0] if response.data else None

    def get_account(self, account_id: str) -> Account:
        row = self._single_row("users", "id", account_id)
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return row_to_account(row)

    def get_progress(self, account_id: str) -> ProgressCounter:
        row = self._single_row("user_progress", "user_id", account_id)
        if row is None:
            raise AccountNotFoundError(f"Progress for account {account_id} not found")
        return row_to_progress(row)

    def find_account_by_email(self, email: str) -> Optional[Account]:
        row = self._single_row("users", "email", email)
        return row_to_account(row) if row else None

    def create_account(self, account: Account, progress: ProgressCounter, transaction: Transaction) -> Account:
        self._execute(self.client.rpc("register_account", {
            "p_user": account_to_row(account),
            "p_progress": progress_to_row(progress),
            "p_transaction": transaction_to_row(transaction),
        }))
        return account

    def commit(self, update: LedgerUpdate) -> Account:
        response = self._execute(self.client.rpc("commit_ledger_update", {
            "p_expected_version": update.expected_version,
            "p_user": account_to_row(update.account),
            "p_progress": progress_to_row(update.progress),
            "p_transactions": [transaction_to_row(t) for t in update.transactions],
        }))
        if not response.data:
            # Distinguish a vanished account from a stale version.
            self.get_account(update.account.id)
            raise ConflictError(
                f"Account {update.account.id} changed concurrently",
                {"expected": update.expected_version},
            )
        return update.account.model_copy(update={"version": update.expected_version + 1})

    def list_transactions(self, account_id: str, limit: int) -> list[Transaction]:
        response = self._execute(
            self.client.table("transactions")
            .select("*")
            .eq("user_id", account_id)
            .order("created_at", desc=True)
            .limit(limit)
        )
        return [row_to_transaction(row) for row in response.data or []]

    def list_accounts(self) -> list[Account]:
        response = self._execute(self.client.table("users").select("*").order("created_at", desc=True))
        return [row_to_account(row) for row in response.data or []]

    def count_accounts(self) -> int:
        response = self._execute(self.client.table("users").select("id", count="exact"))
        return response.count or 0

    def sum_lifetime_accrued(self) -> int:
        response = self._execute(self.client.table("users").select("total_mined"))
        return sum(row.get("total_mined") or 0 for row in response.data or [])

    def sum_transactions(self, kind: TransactionKind) -> int:
        response = self._execute(self.client.table("transactions").select("amount").eq("type", kind.value))
        return sum(row.get("amount") or 0 for row in response.data or [])

    def count_active_since(self, since: datetime) -> int:
        response = self._execute(
            self.client.table("users").select("id", count="exact").gte("last_mining_time", since.isoformat())
        )
        return response.count or 0

    def count_referred(self) -> int:
        response = self._execute(
            self.client.table("users").select("id", count="exact").not_.is_("invited_by", "null")
        )
        return response.count or 0


def isolated_client(url: str, key: str, timeout: Optional[float] = None) -> Client:
    """A client whose session is never shared, persisted or refreshed."""
    options = {"auto_refresh_token": False, "persist_session": False}
    if timeout is not None:
        options["postgrest_client_timeout"] = timeout
    return create_client(url, key, options=ClientOptions(**options))


class SupabaseAuthProvider(AuthProvider):
    """Supabase Auth wrapper.

    `client` is the shared service client and never holds a user session:
    tokens are resolved and revoked through it by value. Sign-up and sign-in
    run on a throwaway client from `session_client_factory`, so a login never
    changes the auth header the ledger store sends.
    """

    def __init__(self, client: Client, session_client_factory: Optional[Callable[[], Client]] = None):
        self.client = client
        self.session_client_factory = session_client_factory or (
            lambda: isolated_client(client.supabase_url, client.supabase_key)
        )

    def sign_up(self, email: str, password: str, metadata: Optional[dict] = None) -> str:
        try:
            response = self.session_client_factory().auth.sign_up({
                "email": email,
                "password": password,
                "options": {"data": dict(metadata or {})},
            })
        except AuthApiError as exc:
            if "already" in str(exc).lower():
                raise ConflictError("Email already registered", {"field": "email"}) from exc
            raise InvalidArgumentError(str(exc)) from exc
        except (AuthError, httpx.HTTPError) as exc:
            logger.error("Supabase sign-up failed: %s", exc)
            raise UnavailableError("Authentication service is unavailable") from exc

        if response.user is None:
            raise UnavailableError("Authentication service returned no user")
        return response.user.id

    def sign_in(self, email: str, password: str) -> AuthSession:
        try:
            response = self.session_client_factory().auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except AuthApiError as exc:
            raise InvalidCredentialsError("Invalid login credentials") from exc
        except (AuthError, httpx.HTTPError) as exc:
            logger.error("Supabase sign-in failed: %s", exc)
            raise UnavailableError("Authentication service is unavailable") from exc

        if response.user is None or response.session is None:
            raise InvalidCredentialsError("Invalid login credentials")
        return AuthSession(account_id=response.user.id, access_token=response.session.access_token)

    def resolve(self, access_token: str) -> str:
        try:
            response = self.client.auth.get_user(access_token)
        except AuthApiError as exc:
            raise InvalidCredentialsError("Session expired or invalid") from exc
        except (AuthError, httpx.HTTPError) as exc:
            raise UnavailableError("Authentication service is unavailable") from exc

        if response is None or response.user is None:
            raise InvalidCredentialsError("Session expired or invalid")
        return response.user.id

    def sign_out(self, access_token: str) -> None:
        try:
            self.client.auth.admin.sign_out(access_token)
        except AuthApiError as exc:
            raise InvalidCredentialsError("Session expired or invalid") from exc
        except (AuthError, httpx.HTTPError) as exc:
            raise UnavailableError("Authentication service is unavailable") from exc
