"""
Error taxonomy for the mining ledger.

Components below the account facade raise these; the facade turns them
into ServiceResult values.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    UNAUTHORIZED = "UNAUTHORIZED"
    UNAVAILABLE = "UNAVAILABLE"
    CONFLICT = "CONFLICT"


class SodmaxError(Exception):
    """Base exception for ledger, store and auth failures."""

    kind: ErrorKind = ErrorKind.UNAVAILABLE

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AccountNotFoundError(SodmaxError):
    kind = ErrorKind.NOT_FOUND


class InvalidArgumentError(SodmaxError):
    kind = ErrorKind.INVALID_ARGUMENT


class InsufficientFundsError(SodmaxError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class UnauthorizedError(SodmaxError):
    kind = ErrorKind.UNAUTHORIZED


class InvalidCredentialsError(UnauthorizedError):
    pass


class UnavailableError(SodmaxError):
    kind = ErrorKind.UNAVAILABLE


class ConflictError(SodmaxError):
    kind = ErrorKind.CONFLICT
