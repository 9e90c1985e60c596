"""
Authentication Provider interface and an in-process implementation.

Sign-in failures never say whether the email exists.
"""

import hashlib
import hmac
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from typing import Optional
from uuid import uuid4

from .errors import ConflictError, InvalidCredentialsError
from .models import AuthSession

logger = logging.getLogger(__name__)


class AuthProvider(ABC):
    @abstractmethod
    def sign_up(self, email: str, password: str, metadata: Optional[dict] = None) -> str:
        """Create a login and return the new account id."""

    @abstractmethod
    def sign_in(self, email: str, password: str) -> AuthSession:
        ...

    @abstractmethod
    def resolve(self, access_token: str) -> str:
        """Return the account id a live access token belongs to."""

    @abstractmethod
    def sign_out(self, access_token: str) -> None:
        ...


class InMemoryAuthProvider(AuthProvider):
    def __init__(self, iterations: int = 100_000):
        self.iterations = iterations
        self._users: dict[str, dict] = {}
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()

    def _hash(self, password: str, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, self.iterations)

    def sign_up(self, email: str, password: str, metadata: Optional[dict] = None) -> str:
        salt = secrets.token_bytes(16)
        digest = self._hash(password, salt)
        with self._lock:
            if email in self._users:
                raise ConflictError("Email already registered", {"field": "email"})
            account_id = str(uuid4())
            self._users[email] = {
                "id": account_id, "salt": salt, "hash": digest,
                "metadata": dict(metadata or {}),
            }
        logger.info("Auth user created: %s", account_id)
        return account_id

    def sign_in(self, email: str, password: str) -> AuthSession:
        with self._lock:
            user = self._users.get(email)
        # Unknown emails still pay for one hash.
        salt = user["salt"] if user else secrets.token_bytes(16)
        digest = self._hash(password, salt)
        if user is None or not hmac.compare_digest(digest, user["hash"]):
            raise InvalidCredentialsError("Invalid login credentials")

        token = secrets.token_urlsafe(32)
        with self._lock:
            self._tokens[token] = user["id"]
        return AuthSession(account_id=user["id"], access_token=token)

    def resolve(self, access_token: str) -> str:
        with self._lock:
            account_id = self._tokens.get(access_token)
        if account_id is None:
            raise InvalidCredentialsError("Session expired or invalid")
        return account_id

    def sign_out(self, access_token: str) -> None:
        with self._lock:
            self._tokens.pop(access_token, None)
