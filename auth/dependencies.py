"""
auth/dependencies.py -- FastAPI Depends() helper for bearer authentication.

get_current_identity() is the request-time gate. It accepts exactly one form
of credential:

    Authorization: Bearer <access token>

and raises HTTP 401 when:
  - the header is absent,
  - the header is not exactly two space-separated parts with scheme "Bearer",
  - the token fails TokenIssuer validation (malformed, expired, bad
    signature, unexpected algorithm),
  - the token is not an access token. A refresh token never authenticates a
    request.

Every failure produces the same 401 body; the specific reason is only logged
at DEBUG. On success the identity is attached to request.state (account_id,
email) and returned.

The gate depends on request.app.state.token_issuer only. It never touches the
account store -- a token is trusted until it expires.

Layer rule: may import fastapi (part of the DI system); no imports from api/.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import TokenError
from auth.models import TOKEN_TYPE_ACCESS, Identity
from auth.tokens import TokenIssuer

logger = logging.getLogger("authcore.auth")

_BEARER_SCHEME = "Bearer"


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
        headers={"WWW-Authenticate": _BEARER_SCHEME},
    )


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an Authorization header value, or None if malformed."""
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != _BEARER_SCHEME or not parts[1]:
        return None
    return parts[1]


def get_current_identity(request: Request) -> Identity:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_current_identity)): ...
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise _unauthorized()

    issuer: TokenIssuer = request.app.state.token_issuer
    try:
        claims = issuer.validate(token)
    except TokenError as exc:
        logger.debug("Bearer token rejected: %s", type(exc).__name__)
        raise _unauthorized() from exc

    if claims.type != TOKEN_TYPE_ACCESS:
        logger.debug("Bearer token rejected: %s token used as access token", claims.type)
        raise _unauthorized()

    request.state.account_id = claims.subject
    request.state.email = claims.email
    return Identity(account_id=claims.subject, email=claims.email)
