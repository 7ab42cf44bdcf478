"""
auth/errors.py -- Error taxonomy for the credential lifecycle.

Every class carries a machine-readable `code` and the HTTP `status_code` the
API layer renders it with, so api/main.py maps the whole tree with a single
exception handler.

Information collapse:
  InvalidCredentials and InvalidOrExpiredToken use fixed messages. Callers
  must not pass a cause-specific message to them -- "no such account" and
  "wrong password" have to render byte-identically, as do "token never
  existed", "already consumed" and "expired".

  TokenError subclasses distinguish the validation failure for logging and
  tests only. They all render as the same generic 401.

Layer rule: no imports from api/.
"""

from __future__ import annotations

__all__ = [
    "AuthError",
    "ValidationError",
    "InvalidDateFormat",
    "DuplicateEmail",
    "EmailAlreadyRegistered",
    "AccountNotFound",
    "InvalidCredentials",
    "AccountInactive",
    "InvalidOrExpiredToken",
    "InvalidTokenType",
    "TokenError",
    "TokenMalformed",
    "TokenExpired",
    "TokenBadSignature",
    "TokenUnexpectedAlgorithm",
    "InternalError",
    "StoreError",
]


class AuthError(Exception):
    """Base class for every error raised by the auth package."""

    code = "auth_error"
    status_code = 400
    default_message = "Request could not be completed."
    # False: the API renders default_message instead of the instance message.
    expose_message = True

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    """Input failed a domain rule the request schema could not express."""

    code = "validation_error"
    default_message = "Request validation failed."


class InvalidDateFormat(ValidationError):
    code = "invalid_date_format"
    default_message = "Invalid date format. Expected YYYY-MM-DD."


class DuplicateEmail(AuthError):
    """The accounts table uniqueness constraint rejected the email."""

    code = "email_already_registered"
    status_code = 409
    default_message = "Email already registered."


class EmailAlreadyRegistered(DuplicateEmail):
    """Raised by the service on the advisory pre-check or a store-level DuplicateEmail."""


class AccountNotFound(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Account not found."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid email or password."

    def __init__(self) -> None:
        super().__init__()


class AccountInactive(AuthError):
    code = "account_inactive"
    status_code = 403
    default_message = "Account is inactive."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    default_message = "Invalid or expired token."

    def __init__(self) -> None:
        super().__init__()


class InvalidTokenType(AuthError):
    code = "invalid_token_type"
    status_code = 401
    default_message = "Invalid token type."


# ---------------------------------------------------------------------------
# Bearer token validation failures
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    """A signed bearer token failed validation. Rendered as a generic 401."""

    code = "unauthorized"
    status_code = 401
    default_message = "Invalid or expired token."
    expose_message = False


class TokenMalformed(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class TokenBadSignature(TokenError):
    pass


class TokenUnexpectedAlgorithm(TokenError):
    pass


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class InternalError(AuthError):
    """Hashing, signing, or persistence failed. The cause is chained, never rendered."""

    code = "internal_error"
    status_code = 500
    default_message = "An unexpected error occurred."
    expose_message = False


class StoreError(InternalError):
    """A persistence operation failed. The message names the operation."""
