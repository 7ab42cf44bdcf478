"""
auth/tokens.py -- Signed bearer tokens (access/refresh) and opaque single-use tokens.

Security design decisions:
  JWT: python-jose, HS256. Tokens carry {sub, email, type, iat, exp}. The
       signing secret is injected into TokenIssuer at construction and never
       changes afterwards -- there is no module-level key and no runtime
       rotation. Rotating JWT_SECRET (restart) invalidates every token.

  Algorithm pinning: the header alg is checked against HS256 BEFORE any
       signature work. "none", RS*/ES* (public-key confusion) and any other
       value are rejected as TokenUnexpectedAlgorithm even when the payload
       would otherwise parse. python-jose's algorithms=[...] allow-list is
       kept as a second line of defense.

  Failure taxonomy: validate() raises exactly one of TokenMalformed,
       TokenBadSignature, TokenExpired, TokenUnexpectedAlgorithm. The API
       layer collapses all four into one 401.

  Opaque tokens: secrets.token_hex(32) gives 256 bits of entropy. Used for
       email verification and password reset; they are stored, not signed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import jws, jwt
from jose.exceptions import ExpiredSignatureError, JWSError, JWTClaimsError, JWTError

from auth.errors import (
    InternalError,
    TokenBadSignature,
    TokenExpired,
    TokenMalformed,
    TokenUnexpectedAlgorithm,
)
from auth.models import TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, Claims, TokenPair

if TYPE_CHECKING:
    from core.config import Settings

ALGORITHM = "HS256"

_TOKEN_TYPES = (TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH)

# One compact-JWS segment: unpadded base64url. The signature may be empty ("none").
_SEGMENT = re.compile(r"[A-Za-z0-9_-]*")

_DECODE_OPTIONS = {
    "require_iat": True,
    "require_exp": True,
    "require_sub": True,
    "verify_aud": False,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_opaque_token() -> str:
    """Return a 64-char hex string (256 bits) for verification/reset links."""
    return secrets.token_hex(32)


class TokenIssuer:
    """Issues and validates HS256 access/refresh tokens.

    Immutable after construction, so one instance is shared by every request
    without locking.

    Usage:
        issuer = TokenIssuer.from_settings(get_settings())
        token, expires_in = issuer.issue_access(account.id, account.email)
        claims = issuer.validate(token)
    """

    def __init__(
        self,
        secret: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("TokenIssuer requires a non-empty signing secret")
        self._secret = secret
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenIssuer:
        return cls(
            secret=settings.jwt_secret,
            access_ttl=timedelta(minutes=settings.jwt_access_token_minutes),
            refresh_ttl=timedelta(days=settings.jwt_refresh_token_days),
        )

    @property
    def access_lifetime(self) -> int:
        """Access token lifetime in whole seconds (the expires_in value)."""
        return int(self._access_ttl.total_seconds())

    @property
    def refresh_lifetime(self) -> int:
        return int(self._refresh_ttl.total_seconds())

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access(self, account_id: str, email: str) -> tuple[str, int]:
        return self._issue(account_id, email, TOKEN_TYPE_ACCESS, self._access_ttl), self.access_lifetime

    def issue_refresh(self, account_id: str, email: str) -> tuple[str, int]:
        return self._issue(account_id, email, TOKEN_TYPE_REFRESH, self._refresh_ttl), self.refresh_lifetime

    def issue_pair(self, account_id: str, email: str) -> TokenPair:
        access, expires_in = self.issue_access(account_id, email)
        refresh, _ = self.issue_refresh(account_id, email)
        return TokenPair(access_token=access, refresh_token=refresh, expires_in=expires_in)

    def _issue(self, account_id: str, email: str, token_type: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "sub": str(account_id),
            "email": email,
            "type": token_type,
            "iat": now,
            "exp": now + ttl,
        }
        try:
            return jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        except JWTError as exc:
            raise InternalError(f"signing {token_type} token failed") from exc

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, token: str) -> Claims:
        """Verify a token and return its Claims.

        Order matters: structure, then algorithm pin, then payload decoding,
        then signature, then expiry and claim shape. Each stage raises its own
        TokenError.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformed("token is not a three-part compact JWS")
        if not all(_SEGMENT.fullmatch(segment) for segment in token.split(".")):
            raise TokenMalformed("token segments are not base64url")
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenMalformed("token header could not be decoded") from exc

        alg = header.get("alg")
        if alg != ALGORITHM:
            raise TokenUnexpectedAlgorithm(f"unexpected signing algorithm: {alg!r}")

        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformed("token payload could not be decoded") from exc

        try:
            jws.verify(token, self._secret, algorithms=[ALGORITHM])
        except JWSError as exc:
            raise TokenBadSignature("token signature verification failed") from exc

        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGORITHM], options=_DECODE_OPTIONS)
        except ExpiredSignatureError as exc:
            raise TokenExpired("token has expired") from exc
        except (JWTClaimsError, JWTError) as exc:
            raise TokenMalformed("token claims are invalid") from exc

        return _claims_from_payload(payload)


def _claims_from_payload(payload: dict) -> Claims:
    sub = payload.get("sub")
    email = payload.get("email")
    token_type = payload.get("type")
    iat = payload.get("iat")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub:
        raise TokenMalformed("token subject is missing")
    if not isinstance(email, str):
        raise TokenMalformed("token email claim is missing")
    if token_type not in _TOKEN_TYPES:
        raise TokenMalformed("token type claim is missing or unknown")
    if not isinstance(iat, (int, float)) or not isinstance(exp, (int, float)):
        raise TokenMalformed("token timestamps are not numeric")
    return Claims(
        subject=sub,
        email=email,
        type=token_type,
        issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
    )
