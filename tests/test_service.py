"""Unit tests for auth/service.py -- CredentialService business rules.

Covers:
- register: normalized email, unverified account, token pair, verification
  hand-off, duplicate and concurrent-duplicate rejection, date validation
- login: identical errors for unknown email and wrong password, inactive
  accounts, best-effort last-login stamp
- refresh: refresh tokens only, same refresh token handed back
- verify_email / reset_password: single use, expiry, concurrency
- resend_verification / request_password_reset: silent on unknown emails
- notifier failures never fail the primary operation
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from auth.errors import (
    AccountInactive,
    AccountNotFound,
    EmailAlreadyRegistered,
    InvalidCredentials,
    InvalidDateFormat,
    InvalidOrExpiredToken,
    InvalidTokenType,
    StoreError,
    TokenError,
)
from auth.service import CredentialService
from auth.store import AccountStore

# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_unverified_account_with_tokens(self, service, notifier, issuer, register) -> None:
        result = register(email="  Ada@Example.com ")
        assert result.account.email == "ada@example.com"
        assert result.account.verified is False
        assert result.account.active is True
        assert result.account.date_of_birth == "1990-12-10"
        assert issuer.validate(result.tokens.access_token).subject == result.account.id
        assert issuer.validate(result.tokens.refresh_token).type == "refresh"
        assert result.tokens.expires_in == issuer.access_lifetime

    def test_hands_off_verification_token(self, notifier, register) -> None:
        register(email="a@x.com")
        assert len(notifier.verifications) == 1
        email, token = notifier.verifications[0]
        assert email == "a@x.com"
        assert len(token) == 64

    def test_password_is_hashed(self, store, register) -> None:
        result = register(password="Password123!")
        stored = store.get_by_id(result.account.id)
        assert stored.password_hash != "Password123!"
        assert stored.password_hash.startswith("$2")

    def test_duplicate_email_rejected(self, register) -> None:
        register(email="a@x.com")
        with pytest.raises(EmailAlreadyRegistered):
            register(email="A@X.COM")

    def test_concurrent_duplicate_has_one_winner(self, register) -> None:
        def attempt(_):
            try:
                register(email="race@x.com")
                return "ok"
            except EmailAlreadyRegistered:
                return "dup"

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(attempt, range(4)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("dup") == 3

    @pytest.mark.parametrize(
        "dob",
        ["10/12/1990", "1990-13-01", "1990-02-30", "yesterday", "", "1990-2-3", "1990-02-03\n"],
    )
    def test_invalid_date_of_birth(self, service, dob: str) -> None:
        with pytest.raises(InvalidDateFormat):
            service.register(
                email="a@x.com",
                password="Password123!",
                full_name="Ada Lovelace",
                date_of_birth=dob,
                gender="female",
            )

    def test_invalid_date_creates_nothing(self, service, store) -> None:
        with pytest.raises(InvalidDateFormat):
            service.register("a@x.com", "Password123!", "Ada Lovelace", "31-01-1990", "female")
        assert store.email_exists("a@x.com") is False

    def test_notifier_failure_does_not_fail_registration(self, store, hasher, issuer, failing_notifier) -> None:
        svc = CredentialService(store=store, hasher=hasher, issuer=issuer, notifier=failing_notifier)
        result = svc.register("a@x.com", "Password123!", "Ada Lovelace", "1990-12-10", "female")
        assert store.get_by_id(result.account.id).email_verification_token is not None


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success(self, service, store, issuer, register) -> None:
        created = register(email="a@x.com", password="Password123!")
        result = service.login("A@x.com", "Password123!")
        assert result.account.id == created.account.id
        assert issuer.validate(result.tokens.access_token).type == "access"
        assert store.get_by_id(created.account.id).last_login_at is not None

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, service, register) -> None:
        register(email="a@x.com", password="Password123!")

        with pytest.raises(InvalidCredentials) as unknown:
            service.login("nobody@x.com", "Password123!")
        with pytest.raises(InvalidCredentials) as wrong:
            service.login("a@x.com", "WrongPassword!")

        assert type(unknown.value) is type(wrong.value)
        assert unknown.value.message == wrong.value.message
        assert unknown.value.code == wrong.value.code

    def test_unverified_account_can_log_in(self, service, register) -> None:
        register(email="a@x.com")
        assert service.login("a@x.com", "Password123!").account.verified is False

    def test_inactive_account_rejected_after_password_check(self, service, store, register) -> None:
        created = register(email="a@x.com")
        store.set_active(created.account.id, False)

        with pytest.raises(AccountInactive):
            service.login("a@x.com", "Password123!")
        # A wrong password still reports bad credentials, not the inactive state.
        with pytest.raises(InvalidCredentials):
            service.login("a@x.com", "WrongPassword!")

    def test_deleted_account_cannot_log_in(self, service, register) -> None:
        created = register(email="a@x.com")
        service.delete_account(created.account.id)
        with pytest.raises(InvalidCredentials):
            service.login("a@x.com", "Password123!")

    def test_last_login_failure_is_best_effort(self, tmp_path, hasher, issuer, notifier) -> None:
        class BrokenLoginStampStore(AccountStore):
            def mark_last_login(self, account_id: str) -> None:
                raise StoreError("mark_last_login failed")

        broken = BrokenLoginStampStore(f"sqlite:///{tmp_path / 'broken.db'}")
        svc = CredentialService(store=broken, hasher=hasher, issuer=issuer, notifier=notifier)
        svc.register("a@x.com", "Password123!", "Ada Lovelace", "1990-12-10", "female")

        result = svc.login("a@x.com", "Password123!")
        assert result.tokens.access_token
        broken.close()


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_returns_new_access_and_same_refresh(self, service, issuer, register) -> None:
        created = register()
        pair = service.refresh_access_token(created.tokens.refresh_token)
        assert pair.refresh_token == created.tokens.refresh_token
        claims = issuer.validate(pair.access_token)
        assert claims.type == "access"
        assert claims.subject == created.account.id

    def test_access_token_rejected(self, service, register) -> None:
        created = register()
        with pytest.raises(InvalidTokenType):
            service.refresh_access_token(created.tokens.access_token)

    def test_garbage_rejected(self, service) -> None:
        with pytest.raises(TokenError):
            service.refresh_access_token("not.a.token")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class TestVerifyEmail:
    def test_verify_once(self, service, store, notifier, register) -> None:
        created = register(email="a@x.com")
        token = notifier.last_verification_token("a@x.com")

        service.verify_email(token)
        assert store.get_by_id(created.account.id).verified is True

        with pytest.raises(InvalidOrExpiredToken):
            service.verify_email(token)

    def test_unknown_token(self, service) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            service.verify_email("0" * 64)

    def test_expired_token(self, store, hasher, issuer, notifier) -> None:
        svc = CredentialService(
            store=store, hasher=hasher, issuer=issuer, notifier=notifier, verification_ttl=timedelta(seconds=-1)
        )
        svc.register("a@x.com", "Password123!", "Ada Lovelace", "1990-12-10", "female")
        with pytest.raises(InvalidOrExpiredToken):
            svc.verify_email(notifier.last_verification_token("a@x.com"))

    def test_unknown_consumed_and_expired_look_the_same(self, store, hasher, issuer, notifier) -> None:
        expiring = CredentialService(
            store=store, hasher=hasher, issuer=issuer, notifier=notifier, verification_ttl=timedelta(seconds=-1)
        )
        expiring.register("old@x.com", "Password123!", "Ada Lovelace", "1990-12-10", "female")
        fresh = CredentialService(store=store, hasher=hasher, issuer=issuer, notifier=notifier)
        fresh.register("new@x.com", "Password123!", "Ada Lovelace", "1990-12-10", "female")
        consumed = notifier.last_verification_token("new@x.com")
        fresh.verify_email(consumed)

        errors = []
        for token in ("f" * 64, consumed, notifier.last_verification_token("old@x.com")):
            with pytest.raises(InvalidOrExpiredToken) as exc_info:
                fresh.verify_email(token)
            errors.append((exc_info.value.code, exc_info.value.message))
        assert len(set(errors)) == 1

    def test_concurrent_verify_has_one_winner(self, service, notifier, register) -> None:
        register(email="a@x.com")
        token = notifier.last_verification_token("a@x.com")

        def attempt(_):
            try:
                service.verify_email(token)
                return True
            except InvalidOrExpiredToken:
                return False

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(attempt, range(6)))
        assert results.count(True) == 1


class TestResendVerification:
    def test_replaces_token(self, service, store, notifier, register) -> None:
        created = register(email="a@x.com")
        old = notifier.last_verification_token("a@x.com")

        service.resend_verification("a@x.com")
        new = notifier.last_verification_token("a@x.com")
        assert new != old

        with pytest.raises(InvalidOrExpiredToken):
            service.verify_email(old)
        service.verify_email(new)
        assert store.get_by_id(created.account.id).verified is True

    def test_unknown_email_is_silent(self, service, notifier) -> None:
        assert service.resend_verification("nobody@x.com") is None
        assert notifier.verifications == []

    def test_verified_account_gets_nothing(self, service, notifier, register) -> None:
        register(email="a@x.com")
        service.verify_email(notifier.last_verification_token("a@x.com"))
        assert service.resend_verification("a@x.com") is None
        assert len(notifier.verifications) == 1


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_full_flow(self, service, notifier, register) -> None:
        register(email="a@x.com", password="OldPassword1!")
        assert service.request_password_reset("a@x.com") is None
        token = notifier.last_reset_token("a@x.com")

        service.reset_password(token, "NewPassword1!")

        assert service.login("a@x.com", "NewPassword1!").account.email == "a@x.com"
        with pytest.raises(InvalidCredentials):
            service.login("a@x.com", "OldPassword1!")

    def test_token_is_single_use(self, service, notifier, register) -> None:
        register(email="a@x.com")
        service.request_password_reset("a@x.com")
        token = notifier.last_reset_token("a@x.com")
        service.reset_password(token, "NewPassword1!")
        with pytest.raises(InvalidOrExpiredToken):
            service.reset_password(token, "OtherPassword1!")
        service.login("a@x.com", "NewPassword1!")

    def test_unknown_email_is_silent(self, service, notifier) -> None:
        assert service.request_password_reset("nobody@x.com") is None
        assert notifier.resets == []

    def test_bogus_token(self, service) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            service.reset_password("not-a-real-token", "NewPassword1!")

    def test_second_request_invalidates_first(self, service, notifier, register) -> None:
        register(email="a@x.com")
        service.request_password_reset("a@x.com")
        first = notifier.last_reset_token("a@x.com")
        service.request_password_reset("a@x.com")
        second = notifier.last_reset_token("a@x.com")

        with pytest.raises(InvalidOrExpiredToken):
            service.reset_password(first, "NewPassword1!")
        service.reset_password(second, "NewPassword1!")

    def test_expired_token(self, store, hasher, issuer, notifier) -> None:
        svc = CredentialService(
            store=store, hasher=hasher, issuer=issuer, notifier=notifier, reset_ttl=timedelta(seconds=-1)
        )
        svc.register("a@x.com", "OldPassword1!", "Ada Lovelace", "1990-12-10", "female")
        svc.request_password_reset("a@x.com")
        with pytest.raises(InvalidOrExpiredToken):
            svc.reset_password(notifier.last_reset_token("a@x.com"), "NewPassword1!")
        svc.login("a@x.com", "OldPassword1!")

    def test_concurrent_reset_has_one_winner(self, service, notifier, register) -> None:
        register(email="a@x.com")
        service.request_password_reset("a@x.com")
        token = notifier.last_reset_token("a@x.com")

        def attempt(i):
            try:
                service.reset_password(token, f"NewPassword{i}!")
                return i
            except InvalidOrExpiredToken:
                return None

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(attempt, range(4)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        service.login("a@x.com", f"NewPassword{winners[0]}!")

    def test_notifier_failure_is_silent(self, store, hasher, issuer, failing_notifier, register) -> None:
        register(email="a@x.com")
        svc = CredentialService(store=store, hasher=hasher, issuer=issuer, notifier=failing_notifier)
        assert svc.request_password_reset("a@x.com") is None
        assert store.get_by_email("a@x.com").password_reset_token is not None


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------


class TestSelfService:
    def test_get_account(self, service, register) -> None:
        created = register()
        assert service.get_account(created.account.id).email == "a@x.com"

    def test_update_profile(self, service, register) -> None:
        created = register()
        updated = service.update_profile(created.account.id, full_name="Ada King", date_of_birth="1815-12-10")
        assert updated.full_name == "Ada King"
        assert updated.date_of_birth == "1815-12-10"

    def test_update_profile_rejects_bad_date(self, service, register) -> None:
        created = register()
        with pytest.raises(InvalidDateFormat):
            service.update_profile(created.account.id, date_of_birth="12/10/1815")

    def test_delete_account(self, service, register) -> None:
        created = register()
        service.delete_account(created.account.id)
        with pytest.raises(AccountNotFound):
            service.get_account(created.account.id)
        with pytest.raises(AccountNotFound):
            service.delete_account(created.account.id)

    def test_deleted_email_can_register_again(self, service, register) -> None:
        first = register(email="a@x.com")
        service.delete_account(first.account.id)
        second = register(email="a@x.com")
        assert second.account.id != first.account.id

