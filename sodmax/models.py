from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Generic, Optional, TypeVar
from uuid import uuid4
from pydantic import BaseModel, Field, ConfigDict

from .errors import ErrorKind

T = TypeVar("T")

USDT_UNITS = 1_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_usdt(units: int) -> Decimal:
    """Render micro-USDT units as a USDT amount."""
    return Decimal(units) / Decimal(USDT_UNITS)


class Currency(str, Enum):
    SOD = "SOD"
    USDT = "USDT"


class TransactionKind(str, Enum):
    ACCRUAL = "accrual"
    CONVERSION_REWARD = "conversion_reward"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    REDEMPTION = "redemption"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"


class Account(BaseModel):
    id: str
    email: str
    display_name: str
    primary_balance: int = Field(default=0, ge=0)
    secondary_balance: int = Field(default=0, ge=0)
    lifetime_accrued: int = Field(default=0, ge=0)
    daily_accrued: int = Field(default=0, ge=0)
    last_accrual_at: Optional[datetime] = None
    is_admin: bool = False
    referral_code: str
    invited_by: Optional[str] = None
    mining_power: int = 10
    level: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def accrued_today(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        if self.last_accrual_at is None or self.last_accrual_at.date() != now.date():
            return 0
        return self.daily_accrued


class ProgressCounter(BaseModel):
    account_id: str
    progress: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)


class Transaction(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    kind: TransactionKind
    amount: int
    currency: Currency = Currency.SOD
    note: str = ""
    status: TransactionStatus = TransactionStatus.COMPLETED
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class LedgerUpdate(BaseModel):
    """One atomic unit: new account and progress state plus staged entries.

    The store applies it only if the stored account still carries
    `expected_version`.
    """
    account: Account
    progress: ProgressCounter
    expected_version: int
    transactions: list[Transaction] = Field(default_factory=list)


class AccrualResult(BaseModel):
    account_id: str
    primary_balance: int
    secondary_balance: int
    progress: int
    converted: bool
    conversions: int
    transactions: list[Transaction]


class RedemptionResult(BaseModel):
    account_id: str
    redeemed: int
    primary_debited: int
    primary_balance: int
    secondary_balance: int
    transactions: list[Transaction]


class AccountSnapshot(BaseModel):
    account: Account
    progress: ProgressCounter
    progress_percent: float


class AuthSession(BaseModel):
    account_id: str
    access_token: str


class SystemStatistics(BaseModel):
    total_accounts: int
    total_mined: int
    total_rewards: int
    active_today: int
    referred_accounts: int


class ServiceResult(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def ok(cls, data: T = None, message: str = "") -> "ServiceResult[T]":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: ErrorKind, message: str) -> "ServiceResult[T]":
        return cls(success=False, error=error, message=message)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., description="At least 6 characters")
    display_name: str
    referral_code: Optional[str] = Field(default=None, description="Code of the inviting account")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "email": "miner@example.com",
            "password": "hunter22",
            "display_name": "Sara Miner",
            "referral_code": "K7Q2ZP0A"
        }
    })


class LoginRequest(BaseModel):
    email: str
    password: str


class AmountRequest(BaseModel):
    amount: int = Field(..., description="SOD for accruals, micro-USDT for redemptions")


class AdjustmentRequest(BaseModel):
    delta: int
    note: str = ""


class SessionResponse(BaseModel):
    access_token: str
    snapshot: AccountSnapshot
