"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
service do the work; api/models.py owns the HTTP contract.

password_hash is declared repr=False and is left out of public_dict(), so it
never reaches a log line or a response body once written.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"


@dataclass
class Account:
    """A persisted identity record.

    email is stored normalized (stripped, lower-cased). id is assigned by the
    store on insert and never changes. deleted_at is a soft-delete tombstone;
    the store filters tombstoned rows out of every query, so an Account handed
    to callers always has deleted_at None.

    The token pairs (email_verification_*, password_reset_*) are written and
    cleared together -- never one half alone.
    """

    email: str
    password_hash: str = field(repr=False)
    full_name: str = ""
    date_of_birth: str = ""  # ISO date, YYYY-MM-DD
    gender: str = ""
    bio: str | None = None
    id: str | None = None
    verified: bool = False
    active: bool = True
    email_verification_token: str | None = field(default=None, repr=False)
    email_verification_expires_at: str | None = None
    password_reset_token: str | None = field(default=None, repr=False)
    password_reset_expires_at: str | None = None
    last_login_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None

    def public_dict(self) -> dict:
        """Return the fields safe to expose outside the auth package."""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "date_of_birth": self.date_of_birth,
            "gender": self.gender,
            "bio": self.bio,
            "verified": self.verified,
            "active": self.active,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Claims:
    """Decoded payload of a validated bearer token."""

    subject: str  # account id
    email: str
    type: str  # "access" | "refresh"
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds
    token_type: str = "Bearer"  # nosec B105


@dataclass(frozen=True)
class AuthResult:
    """Successful register/login outcome: the account plus a fresh token pair."""

    account: Account
    tokens: TokenPair


@dataclass(frozen=True)
class Identity:
    """Who the current request is authenticated as. Attached by get_current_identity()."""

    account_id: str
    email: str
