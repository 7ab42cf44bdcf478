"""
auth/passwords.py -- One-way, salted, adaptive-cost password hashing.

bcrypt is used directly (no passlib wrapper): passlib's wrap-bug detection
builds a >72-byte probe password that current bcrypt releases reject.

bcrypt only looks at the first 72 bytes of its input, and recent releases
raise instead of truncating silently. PasswordHasher truncates the encoded
password to 72 bytes itself on both hash() and verify() so the two always
agree and no input length is ever an error here -- password policy belongs
to the request schema, not to the hasher.

Timing equalization: verify_dummy() runs a full bcrypt comparison
against a hash computed once per hasher, so "no such account" paths cost the
same as "wrong password" paths.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import InternalError

logger = logging.getLogger("authcore.auth")

_BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordHasher:
    """bcrypt hasher with a configurable work factor.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("Password123!")
        hasher.verify("Password123!", stored)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash = self.hash("authcore_timing_dummy")

    def hash(self, password: str) -> str:
        """Return a salted bcrypt hash. Raises InternalError on library failure only."""
        try:
            salt = bcrypt.gensalt(rounds=self.rounds)
            return bcrypt.hashpw(_encode(password), salt).decode("utf-8")
        except (ValueError, TypeError) as exc:
            raise InternalError("password hashing failed") from exc

    def verify(self, password: str, password_hash: str) -> bool:
        """Return True on match, False on mismatch.

        Raises InternalError when password_hash is not a bcrypt hash -- that is
        corrupt data, not a wrong password, and must not be reported as one.
        """
        try:
            return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            logger.error("Stored password hash is structurally invalid")
            raise InternalError("password verification failed") from exc

    def verify_dummy(self, password: str) -> None:
        """Burn one bcrypt comparison's worth of time. Result is discarded."""
        bcrypt.checkpw(_encode(password), self._dummy_hash.encode("utf-8"))
