"""
Account Service: the surface a front-end calls.

Every public method returns a ServiceResult; SodmaxError never escapes.
The signed-in account id and its access token are the only state kept here.
"""

import logging
import random
import re
import string
from datetime import datetime, time, timezone
from typing import Any, Callable, Optional, TypeVar

from .auth import AuthProvider
from .config import Settings, get_settings
from .engine import AccrualEngine
from .errors import (
    AccountNotFoundError,
    ConflictError,
    InvalidArgumentError,
    SodmaxError,
    UnauthorizedError,
    UnavailableError,
)
from .models import (
    Account,
    AccountSnapshot,
    AuthSession,
    ProgressCounter,
    ServiceResult,
    SystemStatistics,
    TransactionKind,
    utcnow,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOGIN_FAILED = "invalid email or password"
REFERRAL_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8
MIN_PASSWORD_LENGTH = 6
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def generate_referral_code(length: int = REFERRAL_CODE_LENGTH) -> str:
    return "".join(random.choices(REFERRAL_ALPHABET, k=length))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AccountService:
    def __init__(
        self,
        store: LedgerStore,
        auth: AuthProvider,
        engine: Optional[AccrualEngine] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.auth = auth
        self.engine = engine or AccrualEngine(store, settings=self.settings)
        self.recorder = self.engine.recorder
        self.current_account_id: Optional[str] = None
        self._access_token: Optional[str] = None

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    def _call(self, operation: str, fn: Callable[[], T], failure_message: Optional[str] = None) -> ServiceResult:
        try:
            return ServiceResult.ok(fn())
        except SodmaxError as exc:
            log = logger.error if isinstance(exc, UnavailableError) else logger.info
            log("%s failed (%s): %s", operation, exc.kind.value, exc.message)
            return ServiceResult.fail(exc.kind, failure_message or exc.message)

    # ==================== Sessions ====================

    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        referral_code: Optional[str] = None,
    ) -> ServiceResult:
        return self._call("register", lambda: self._register(email, password, display_name, referral_code))

    def _register(self, email: str, password: str, display_name: str, referral_code: Optional[str]) -> Account:
        email = normalize_email(email)
        display_name = (display_name or "").strip()
        if not EMAIL_RE.match(email):
            raise InvalidArgumentError("A valid email address is required")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidArgumentError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not display_name:
            raise InvalidArgumentError("Display name is required")
        invited_by = (referral_code or "").strip().upper() or None

        account_id = self.auth.sign_up(
            email, password, {"full_name": display_name, "referral_code": invited_by or ""}
        )

        bonus = self.settings.signup_bonus
        progress = ProgressCounter(account_id=account_id, progress=self.settings.signup_progress)
        opening = self.recorder.build(account_id, TransactionKind.ACCRUAL, bonus, f"Signup bonus (+{bonus} SOD)")
        for attempt in range(1, self.settings.conflict_retries + 1):
            account = Account(
                id=account_id,
                email=email,
                display_name=display_name,
                primary_balance=bonus,
                referral_code=generate_referral_code(),
                invited_by=invited_by,
                mining_power=self.settings.initial_mining_power,
            )
            try:
                created = self.store.create_account(account, progress, opening)
            except ConflictError as exc:
                if exc.details.get("field") != "referral_code":
                    raise
                logger.warning("Referral code collision for %s (attempt %d)", account_id, attempt)
                continue
            logger.info("Registered account %s", account_id)
            return created

        raise UnavailableError("Could not allocate a unique referral code")

    def authenticate(self, email: str, password: str) -> ServiceResult:
        def sign_in() -> AccountSnapshot:
            session = self.auth.sign_in(normalize_email(email), password)
            snapshot = self._snapshot(session.account_id)
            self._bind(session)
            logger.info("Account %s signed in", session.account_id)
            return snapshot

        return self._call("authenticate", sign_in, failure_message=LOGIN_FAILED)

    def resume(self, access_token: str) -> ServiceResult:
        def resolve() -> str:
            account_id = self.auth.resolve(access_token)
            self._bind(AuthSession(account_id=account_id, access_token=access_token))
            return account_id

        return self._call("resume", resolve)

    def deauthenticate(self) -> ServiceResult:
        token = self._access_token
        self.current_account_id = None
        self._access_token = None
        if token is None:
            return ServiceResult.ok()
        return self._call("deauthenticate", lambda: self.auth.sign_out(token))

    def _bind(self, session: AuthSession) -> None:
        self.current_account_id = session.account_id
        self._access_token = session.access_token

    # ==================== Balances ====================

    def _snapshot(self, account_id: str) -> AccountSnapshot:
        account = self.store.get_account(account_id)
        progress = self.store.get_progress(account_id)
        percent = round(progress.progress * 100 / self.settings.conversion_threshold, 2)
        return AccountSnapshot(account=account, progress=progress, progress_percent=percent)

    def get_account_snapshot(self, account_id: str) -> ServiceResult:
        return self._call("get_account_snapshot", lambda: self._snapshot(account_id))

    def apply_accrual(self, account_id: str, amount: Any) -> ServiceResult:
        return self._call("apply_accrual", lambda: self.engine.apply_accrual(account_id, amount))

    def redeem_secondary_currency(self, account_id: str, amount: Any) -> ServiceResult:
        return self._call("redeem_secondary_currency", lambda: self.engine.redeem(account_id, amount))

    def list_transactions(self, account_id: str, limit: Optional[int] = None) -> ServiceResult:
        return self._call(
            "list_transactions", lambda: list(self.recorder.list_transactions(account_id, limit))
        )

    def get_today_earnings(self, account_id: str) -> ServiceResult:
        return self._call("get_today_earnings", lambda: self.store.get_account(account_id).accrued_today())

    # ==================== Admin ====================

    def _require_admin(self) -> Account:
        if self.current_account_id is None:
            raise UnauthorizedError("Sign in required")
        try:
            account = self.store.get_account(self.current_account_id)
        except AccountNotFoundError as exc:
            raise UnauthorizedError("Unauthorized access") from exc
        if not account.is_admin:
            raise UnauthorizedError("Unauthorized access")
        return account

    def list_accounts(self) -> ServiceResult:
        def accounts() -> list[Account]:
            self._require_admin()
            return self.store.list_accounts()

        return self._call("list_accounts", accounts)

    def get_system_statistics(self) -> ServiceResult:
        def statistics() -> SystemStatistics:
            self._require_admin()
            start_of_day = datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
            return SystemStatistics(
                total_accounts=self.store.count_accounts(),
                total_mined=self.store.sum_lifetime_accrued(),
                total_rewards=self.store.sum_transactions(TransactionKind.CONVERSION_REWARD),
                active_today=self.store.count_active_since(start_of_day),
                referred_accounts=self.store.count_referred(),
            )

        return self._call("get_system_statistics", statistics)

    def adjust_balance(self, account_id: str, delta: Any, note: str = "") -> ServiceResult:
        def adjust() -> Account:
            admin = self._require_admin()
            logger.info("Admin %s adjusting account %s", admin.id, account_id)
            return self.engine.apply_adjustment(account_id, delta, note)

        return self._call("adjust_balance", adjust)
