"""Wires concrete backends from Settings. No module-level client exists."""

from typing import NamedTuple, Optional

from .accounts import AccountService
from .auth import AuthProvider, InMemoryAuthProvider
from .config import Settings, get_settings
from .engine import AccrualEngine
from .store import InMemoryLedgerStore, LedgerStore
from .supabase_backend import SupabaseAuthProvider, SupabaseLedgerStore, isolated_client


class Backends(NamedTuple):
    store: LedgerStore
    auth: AuthProvider


def build_backends(settings: Optional[Settings] = None) -> Backends:
    settings = settings or get_settings()
    if settings.backend == "supabase":
        url, key, timeout = settings.supabase_url, settings.supabase_key, settings.store_timeout_seconds
        client = isolated_client(url, key, timeout)
        auth = SupabaseAuthProvider(client, session_client_factory=lambda: isolated_client(url, key, timeout))
        return Backends(SupabaseLedgerStore(client), auth)
    return Backends(InMemoryLedgerStore(timeout=settings.store_timeout_seconds), InMemoryAuthProvider())


def build_service(settings: Optional[Settings] = None) -> AccountService:
    settings = settings or get_settings()
    store, auth = build_backends(settings)
    return AccountService(store, auth, engine=AccrualEngine(store, settings=settings), settings=settings)
