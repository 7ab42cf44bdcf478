"""
auth/service.py -- Credential lifecycle: register, login, refresh, verify, reset.

CredentialService orchestrates the three leaves (PasswordHasher, TokenIssuer,
AccountStore) plus the Notifier hand-off. It holds no per-call state, so one
instance serves every request concurrently.

Enumeration safety:
  login() raises the same InvalidCredentials for "no such account" and "wrong
  password", and runs bcrypt on both paths so response time does not tell
  them apart either.

  request_password_reset() and resend_verification() return None whether or
  not the email is registered. The miss path performs a store read in place of
  the hit path's write. A residual latency difference between the two remains
  (read vs. write + hand-off); it is a known, accepted channel.

Single-use tokens:
  verify_email() and reset_password() delegate entirely to the store's atomic
  consume. A False result -- unknown, consumed, expired, or belonging to a
  deleted account -- always becomes the same InvalidOrExpiredToken.

Best-effort paths:
  The last-login stamp and the notifier hand-off log on failure and never fail
  the caller's primary result.

Refresh tokens are not rotated: refresh_access_token() hands back the same
refresh token, which stays usable until its own expiry.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone

from auth.errors import (
    AccountInactive,
    AccountNotFound,
    DuplicateEmail,
    EmailAlreadyRegistered,
    InternalError,
    InvalidCredentials,
    InvalidDateFormat,
    InvalidOrExpiredToken,
    InvalidTokenType,
)
from auth.models import TOKEN_TYPE_REFRESH, Account, AuthResult, TokenPair
from auth.notifier import Notifier
from auth.passwords import PasswordHasher
from auth.store import AccountStore, format_timestamp, normalize_email
from auth.tokens import TokenIssuer, generate_opaque_token

logger = logging.getLogger("authcore.auth")

DATE_FORMAT = "%Y-%m-%d"

# strptime alone accepts "1990-2-3"; the stored form is always zero-padded.
_DATE_SHAPE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def _parse_date(value: str) -> date:
    if not isinstance(value, str) or not _DATE_SHAPE.fullmatch(value):
        raise InvalidDateFormat()
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except (TypeError, ValueError) as exc:
        raise InvalidDateFormat() from exc


class CredentialService:
    """Business rules for the account credential lifecycle.

    Usage:
        service = CredentialService(store, hasher, issuer, notifier)
        result = service.register("a@x.com", "Password123!", "Ada", "1990-01-31", "female")
        service.verify_email(token_from_email)
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        notifier: Notifier,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._issuer = issuer
        self._notifier = notifier
        self._verification_ttl = verification_ttl
        self._reset_ttl = reset_ttl

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        full_name: str,
        date_of_birth: str,
        gender: str,
        bio: str | None = None,
    ) -> AuthResult:
        """Create an unverified account, queue its verification email, and sign it in.

        Raises EmailAlreadyRegistered (advisory pre-check or the store's unique
        index), InvalidDateFormat, or InternalError from hashing/persistence.
        """
        email = normalize_email(email)
        dob = _parse_date(date_of_birth)

        if self._store.email_exists(email):
            raise EmailAlreadyRegistered()

        verification_token = generate_opaque_token()
        account = Account(
            email=email,
            password_hash=self._hasher.hash(password),
            full_name=full_name,
            date_of_birth=dob.isoformat(),
            gender=gender,
            bio=bio,
            verified=False,
            active=True,
            email_verification_token=verification_token,
            email_verification_expires_at=format_timestamp(self._expiry(self._verification_ttl)),
        )
        try:
            account_id = self._store.create_account(account)
        except DuplicateEmail as exc:
            # Lost the race against a concurrent registration of the same email.
            raise EmailAlreadyRegistered() from exc

        created = self._store.get_by_id(account_id)
        logger.info("Account registered: %s", created.id)
        self._hand_off(self._notifier.send_verification_email, created, verification_token, "verification")
        return AuthResult(account=created, tokens=self._issuer.issue_pair(created.id, created.email))

    def login(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password.

        Unknown email and wrong password both raise InvalidCredentials. The
        active flag is checked only after the password matched.
        """
        try:
            account = self._store.get_by_email(email)
        except AccountNotFound:
            # Equalize timing -- do NOT return before running bcrypt
            self._hasher.verify_dummy(password)
            raise InvalidCredentials() from None

        if not self._hasher.verify(password, account.password_hash):
            raise InvalidCredentials()
        if not account.active:
            raise AccountInactive()

        self._record_login(account.id)
        return AuthResult(account=account, tokens=self._issuer.issue_pair(account.id, account.email))

    def refresh_access_token(self, refresh_token: str) -> TokenPair:
        """Issue a new access token from a valid refresh token.

        TokenError subclasses from validation propagate unchanged. An access
        token presented here raises InvalidTokenType.
        """
        claims = self._issuer.validate(refresh_token)
        if claims.type != TOKEN_TYPE_REFRESH:
            raise InvalidTokenType()
        access_token, expires_in = self._issuer.issue_access(claims.subject, claims.email)
        return TokenPair(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> None:
        if not self._store.consume_verification_token(token):
            raise InvalidOrExpiredToken()

    def resend_verification(self, email: str) -> None:
        """Replace the verification token of an unverified account and queue a new email.

        Returns None for unknown and already-verified emails as well.
        """
        try:
            account = self._store.get_by_email(email)
        except AccountNotFound:
            self._store.email_exists(email)
            return
        if account.verified:
            return

        token = generate_opaque_token()
        self._store.set_verification_token(account.id, token, self._expiry(self._verification_ttl))
        self._hand_off(self._notifier.send_verification_email, account, token, "verification")

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Issue a 1-hour reset token if the email belongs to a live account.

        The return value is None on both paths so the caller cannot tell a hit
        from a miss.
        """
        token = generate_opaque_token()
        try:
            account = self._store.get_by_email(email)
        except AccountNotFound:
            self._store.email_exists(email)
            return

        self._store.set_password_reset_token(account.id, token, self._expiry(self._reset_ttl))
        self._hand_off(self._notifier.send_password_reset_email, account, token, "password reset")

    def reset_password(self, token: str, new_password: str) -> None:
        """Replace the password of the account owning token, consuming the token."""
        new_hash = self._hasher.hash(new_password)
        if not self._store.consume_password_reset_token(token, new_hash):
            raise InvalidOrExpiredToken()

    # ------------------------------------------------------------------
    # Account self-service
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> Account:
        return self._store.get_by_id(account_id)

    def update_profile(self, account_id: str, **fields) -> Account:
        if fields.get("date_of_birth") is not None:
            fields["date_of_birth"] = _parse_date(fields["date_of_birth"]).isoformat()
        return self._store.update_profile(account_id, **fields)

    def delete_account(self, account_id: str) -> None:
        if not self._store.soft_delete(account_id):
            raise AccountNotFound()
        logger.info("Account soft-deleted: %s", account_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _expiry(ttl: timedelta) -> datetime:
        return datetime.now(timezone.utc) + ttl

    def _record_login(self, account_id: str) -> None:
        try:
            self._store.mark_last_login(account_id)
        except InternalError:
            logger.warning("Could not record last login for account %s", account_id, exc_info=True)

    @staticmethod
    def _hand_off(send: Callable[[Account, str], None], account: Account, token: str, kind: str) -> None:
        try:
            send(account, token)
        except Exception:
            logger.warning("Could not hand off %s email for account %s", kind, account.id, exc_info=True)
