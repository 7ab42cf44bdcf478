"""
api/routes/v1/auth.py -- Credential lifecycle REST endpoints.

Routes:
  POST   /api/v1/auth/register                -- create account; 201 {account, tokens}
  POST   /api/v1/auth/login                   -- password login; 200 {account, tokens}
  POST   /api/v1/auth/refresh                 -- new access token from a refresh token
  POST   /api/v1/auth/verify-email            -- consume a verification token
  POST   /api/v1/auth/verify-email/resend     -- re-issue a verification token; always 202
  POST   /api/v1/auth/password-reset/request  -- issue a reset token; always 202
  POST   /api/v1/auth/password-reset/confirm  -- consume a reset token, set new password
  GET    /api/v1/auth/me                      -- current account (requires auth)
  PATCH  /api/v1/auth/me                      -- update profile fields (requires auth)
  DELETE /api/v1/auth/me                      -- soft-delete own account (requires auth)

Security:
  - login, password-reset/request and verify-email/resend are rate-limited
       per client IP.
  - password-reset/request and verify-email/resend return the same 202 body
       whether or not the email is registered.
  - Cache-Control: no-store on every response that carries tokens.

Every handler runs its service call in the threadpool under
asyncio.wait_for(REQUEST_TIMEOUT_SECONDS). Store mutations are single
transactions, so a call abandoned at the timeout either committed fully or
not at all. Service errors (auth.errors.AuthError) are rendered by the
exception handler in api/main.py.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountResponse,
    AuthResponse,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    ProfilePatch,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    VerifyEmailRequest,
)
from auth.dependencies import get_current_identity
from auth.models import AuthResult, Identity
from auth.service import CredentialService

# Auth policy:
# - POST   /auth/register, /auth/login, /auth/refresh:        public
# - POST   /auth/verify-email, /auth/verify-email/resend:     public (token / email in body)
# - POST   /auth/password-reset/request, .../confirm:         public (email / token in body)
# - GET    /auth/me, PATCH /auth/me, DELETE /auth/me:         requires auth (get_current_identity)
router = APIRouter()

T = TypeVar("T")

_RESET_REQUESTED = "If that email is registered, a password reset link has been sent."
_VERIFICATION_RESENT = "If that email is registered and unverified, a verification link has been sent."


async def _call(request: Request, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking service call off the event loop under the request timeout."""
    timeout = request.app.state.settings.request_timeout_seconds
    try:
        return await asyncio.wait_for(run_in_threadpool(fn, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise HTTPException(
            status_code=504,
            detail={"code": "timeout", "message": "The request took too long to complete."},
        ) from exc


def _service(request: Request) -> CredentialService:
    return request.app.state.credential_service


def _auth_response(result: AuthResult, response: Response) -> AuthResponse:
    response.headers["Cache-Control"] = "no-store"
    return AuthResponse(
        account=AccountResponse.from_account(result.account),
        tokens=TokenResponse.from_pair(result.tokens),
    )


# ---------------------------------------------------------------------------
# Registration, login, refresh
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
async def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    """Create an unverified account and sign it in.

    The verification token goes to the notifier, never into this response.
    """
    result = await _call(
        request,
        _service(request).register,
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        date_of_birth=body.date_of_birth,
        gender=body.gender.value,
        bio=body.bio,
    )
    return _auth_response(result, response)


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(login_rate_limit)  # must sit BELOW @router so the registered endpoint is the limited one
async def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same invalid_credentials
    response.
    """
    result = await _call(request, _service(request).login, body.email, body.password)
    return _auth_response(result, response)


@router.post("/auth/refresh", response_model=TokenResponse)
async def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    """Exchange a refresh token for a new access token. The refresh token is not rotated."""
    pair = await _call(request, _service(request).refresh_access_token, body.refresh_token)
    response.headers["Cache-Control"] = "no-store"
    return TokenResponse.from_pair(pair)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/auth/verify-email", response_model=MessageResponse)
async def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    await _call(request, _service(request).verify_email, body.token)
    return MessageResponse(message="Email verified.")


@router.post("/auth/verify-email/resend", response_model=MessageResponse, status_code=202)
@limiter.limit(login_rate_limit)
async def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    await _call(request, _service(request).resend_verification, body.email)
    return MessageResponse(message=_VERIFICATION_RESENT)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset/request", response_model=MessageResponse, status_code=202)
@limiter.limit(login_rate_limit)
async def request_password_reset(request: Request, body: EmailRequest) -> MessageResponse:
    """Start a password reset. The response never reveals whether the email exists."""
    await _call(request, _service(request).request_password_reset, body.email)
    return MessageResponse(message=_RESET_REQUESTED)


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    await _call(request, _service(request).reset_password, body.token, body.new_password)
    return MessageResponse(message="Password has been reset.")


# ---------------------------------------------------------------------------
# Authenticated self-service
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
async def me(request: Request, identity: Identity = Depends(get_current_identity)) -> AccountResponse:
    """Return the account behind the bearer token.

    A token outlives a soft delete; a deleted account answers 404 here.
    """
    account = await _call(request, _service(request).get_account, identity.account_id)
    return AccountResponse.from_account(account)


@router.patch("/auth/me", response_model=AccountResponse)
async def update_me(
    request: Request,
    body: ProfilePatch,
    identity: Identity = Depends(get_current_identity),
) -> AccountResponse:
    fields = body.model_dump(exclude_none=True, mode="json")
    if not fields:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    account = await _call(request, _service(request).update_profile, identity.account_id, **fields)
    return AccountResponse.from_account(account)


@router.delete("/auth/me", status_code=204)
async def delete_me(request: Request, identity: Identity = Depends(get_current_identity)) -> Response:
    await _call(request, _service(request).delete_account, identity.account_id)
    return Response(status_code=204)
