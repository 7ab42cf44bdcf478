"""
API request and response models for authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

password_hash and the single-use token columns have no field here, so no
response can carry them.
"""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from auth.models import Account, TokenPair

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain. Deliverability
# is proven by the verification email, not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def _normalize_email(value: object) -> object:
    return value.strip().lower() if isinstance(value, str) else value


# Annotated type that lower-cases and strips before the pattern check runs.
_Email = Annotated[str, BeforeValidator(_normalize_email), Field(max_length=255, pattern=EMAIL_PATTERN)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GenderEnum(str, Enum):
    male = "male"
    female = "female"
    other = "other"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    date_of_birth stays a plain string here: the service owns the YYYY-MM-DD
    rule and reports violations as invalid_date_format.
    """

    email: _Email
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    full_name: str = Field(min_length=2, max_length=255)
    date_of_birth: str = Field(max_length=32)
    gender: GenderEnum
    bio: Optional[str] = Field(default=None, max_length=1000)


class LoginRequest(BaseModel):
    email: _Email
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)


class EmailRequest(BaseModel):
    """Request body for password-reset request and verification resend."""

    email: _Email


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class ProfilePatch(BaseModel):
    """Request body for PATCH /api/v1/auth/me. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(default=None, min_length=2, max_length=255)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    gender: Optional[GenderEnum] = None
    bio: Optional[str] = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an account."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    full_name: str
    date_of_birth: str
    gender: str
    bio: Optional[str] = None
    verified: bool
    active: bool
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(**account.public_dict())


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            token_type=pair.token_type,
        )


class AuthResponse(BaseModel):
    """Response for register and login: {account, tokens}."""

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    tokens: TokenResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
