"""
Unit Tests for the Account Service facade

Tests cover:
1. Registration seeding and validation
2. Sign-in, resume and sign-out
3. Balance operations returned as structured results
4. Administrator-only reports
"""

import pytest

from sodmax import accounts
from sodmax.errors import ErrorKind, UnavailableError
from sodmax.models import AccountSnapshot, TransactionKind

from conftest import promote_to_admin, seed_account

PASSWORD = "s3cret-pass"


def register(service, email="miner@example.com", name="Sara Miner", referral_code=None):
    result = service.register(email, PASSWORD, name, referral_code)
    assert result.success, result.message
    return result.data


class TestRegistration:
    """Tests for account registration."""

    def test_register_seeds_bonus_progress_and_entry(self, service, store):
        """Test that registration seeds the bonus, progress and one entry."""
        account = register(service)

        assert account.primary_balance == 1_000_000
        assert account.secondary_balance == 0
        assert account.mining_power == 10
        assert account.level == 1
        assert store.get_progress(account.id).progress == 1_000_000

        entries = store.list_transactions(account.id, 10)
        assert len(entries) == 1
        assert entries[0].kind == TransactionKind.ACCRUAL
        assert entries[0].amount == 1_000_000

    def test_referral_code_shape(self, service):
        """Test the referral code alphabet and length."""
        account = register(service)

        assert len(account.referral_code) == 8
        assert all(c in accounts.REFERRAL_ALPHABET for c in account.referral_code)

    def test_invited_by_is_normalized(self, service):
        """Test that the inviting code is stored upper-cased."""
        account = register(service, referral_code="  ab12cd34 ")

        assert account.invited_by == "AB12CD34"

    def test_email_is_normalized(self, service):
        """Test that emails are trimmed and lower-cased."""
        account = register(service, email="  Miner@Example.COM ")

        assert account.email == "miner@example.com"

    def test_duplicate_email_conflicts(self, service):
        """Test that a second sign-up with the same email conflicts."""
        register(service)

        result = service.register("miner@example.com", PASSWORD, "Someone Else")

        assert result.success is False
        assert result.error == ErrorKind.CONFLICT

    @pytest.mark.parametrize("email,password,name", [
        ("not-an-email", PASSWORD, "Sara"),
        ("a@example.com", "12345", "Sara"),
        ("a@example.com", PASSWORD, "   "),
    ])
    def test_invalid_input(self, service, email, password, name):
        """Test that malformed registration input is rejected."""
        result = service.register(email, password, name)

        assert result.success is False
        assert result.error == ErrorKind.INVALID_ARGUMENT

    def test_referral_code_collision_retries(self, service, monkeypatch):
        """Test that a referral code collision draws a new code."""
        codes = iter(["DUPLICAT", "DUPLICAT", "UNIQUE01"])
        monkeypatch.setattr(accounts, "generate_referral_code", lambda: next(codes))

        first = register(service, email="one@example.com")
        second = register(service, email="two@example.com")

        assert first.referral_code == "DUPLICAT"
        assert second.referral_code == "UNIQUE01"

    def test_referral_code_collision_gives_up(self, service, monkeypatch):
        """Test that repeated collisions end as Unavailable."""
        monkeypatch.setattr(accounts, "generate_referral_code", lambda: "SAMECODE")
        register(service, email="one@example.com")

        result = service.register("two@example.com", PASSWORD, "Two")

        assert result.success is False
        assert result.error == ErrorKind.UNAVAILABLE


class TestSessions:
    """Tests for authenticate / resume / deauthenticate."""

    def test_authenticate_binds_session(self, service):
        """Test that sign-in binds the account id and token."""
        account = register(service)

        result = service.authenticate("miner@example.com", PASSWORD)

        assert result.success is True
        assert isinstance(result.data, AccountSnapshot)
        assert result.data.account.id == account.id
        assert result.data.progress_percent == 10.0
        assert service.current_account_id == account.id
        assert service.access_token

    @pytest.mark.parametrize("email,password", [
        ("miner@example.com", "wrong-password"),
        ("nobody@example.com", PASSWORD),
    ])
    def test_login_failures_are_generic(self, service, email, password):
        """Test that every login failure shows the same message."""
        register(service)

        result = service.authenticate(email, password)

        assert result.success is False
        assert result.message == "invalid email or password"
        assert service.current_account_id is None

    def test_provider_outage_still_renders_generic_message(self, service, monkeypatch):
        """Test that an auth outage keeps the generic login message."""
        register(service)

        def down(*args, **kwargs):
            raise UnavailableError("auth down")

        monkeypatch.setattr(service.auth, "sign_in", down)
        result = service.authenticate("miner@example.com", PASSWORD)

        assert result.message == "invalid email or password"
        assert result.error == ErrorKind.UNAVAILABLE

    def test_resume_and_deauthenticate(self, service, store, auth, engine, settings):
        """Test resuming a session by token and signing out."""
        account = register(service)
        service.authenticate("miner@example.com", PASSWORD)
        token = service.access_token

        other = accounts.AccountService(store, auth, engine=engine, settings=settings)
        assert other.resume(token).data == account.id
        assert other.current_account_id == account.id

        assert other.deauthenticate().success is True
        assert other.current_account_id is None
        assert service.resume(token).error == ErrorKind.UNAUTHORIZED

    def test_deauthenticate_without_session(self, service):
        """Test that signing out with no session succeeds."""
        assert service.deauthenticate().success is True


class TestBalances:
    """Tests for balance operations through the facade."""

    def test_accrual_result(self, service, store):
        """Test the accrual result returned through the facade."""
        account = seed_account(store, progress=9_999_999)

        result = service.apply_accrual(account.id, 2)

        assert result.success is True
        assert result.data.conversions == 1
        assert result.data.secondary_balance == 10_000

    def test_errors_become_results(self, service, store):
        """Test that engine errors come back as failed results."""
        account = seed_account(store)

        missing = service.apply_accrual("missing", 1)
        negative = service.apply_accrual(account.id, -1)

        assert missing.success is False and missing.error == ErrorKind.NOT_FOUND
        assert negative.success is False and negative.error == ErrorKind.INVALID_ARGUMENT

    def test_redemption_insufficient_funds(self, service, store):
        """Test that redeeming too much reports insufficient funds."""
        account = seed_account(store, primary=500)

        result = service.redeem_secondary_currency(account.id, 1)

        assert result.error == ErrorKind.INSUFFICIENT_FUNDS
        assert store.get_account(account.id).primary_balance == 500

    def test_snapshot_and_history(self, service):
        """Test the account snapshot and transaction history."""
        account = register(service)
        service.apply_accrual(account.id, 5)

        snapshot = service.get_account_snapshot(account.id).data
        history = service.list_transactions(account.id).data

        assert snapshot.account.primary_balance == 1_000_005
        assert snapshot.progress.progress == 1_000_005
        assert [t.amount for t in history] == [5, 1_000_000]

    def test_today_earnings(self, service, store):
        """Test today's earnings for the current UTC day."""
        account = seed_account(store)
        assert service.get_today_earnings(account.id).data == 0

        service.apply_accrual(account.id, 30)
        service.apply_accrual(account.id, 12)

        assert service.get_today_earnings(account.id).data == 42


class TestAdmin:
    """Tests for administrator-only operations."""

    def test_requires_session(self, service):
        """Test that admin operations need a session."""
        result = service.list_accounts()

        assert result.success is False
        assert result.error == ErrorKind.UNAUTHORIZED

    def test_requires_admin_flag(self, service):
        """Test that admin operations need the admin flag."""
        register(service)
        service.authenticate("miner@example.com", PASSWORD)

        assert service.list_accounts().error == ErrorKind.UNAUTHORIZED
        assert service.get_system_statistics().error == ErrorKind.UNAUTHORIZED
        assert service.adjust_balance(service.current_account_id, 10).error == ErrorKind.UNAUTHORIZED

    def test_admin_reports(self, service, store):
        """Test the system statistics an admin sees."""
        admin = register(service, email="admin@example.com", name="Admin")
        promote_to_admin(store, admin.id)
        miner = register(service, email="miner@example.com", referral_code=admin.referral_code)
        service.apply_accrual(miner.id, 9_000_001)
        service.authenticate("admin@example.com", PASSWORD)

        listed = service.list_accounts().data
        stats = service.get_system_statistics().data

        assert [a.id for a in listed] == [miner.id, admin.id]
        assert stats.total_accounts == 2
        assert stats.total_mined == 9_000_001
        assert stats.total_rewards == 10_000
        assert stats.active_today == 1
        assert stats.referred_accounts == 1

    def test_admin_adjustment(self, service, store):
        """Test a balance adjustment made by an admin."""
        admin = seed_account(store, is_admin=True)
        service.current_account_id = admin.id
        miner = seed_account(store, primary=100)

        result = service.adjust_balance(miner.id, 25, "Support credit")

        assert result.success is True
        assert result.data.primary_balance == 125


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
