"""
API request and response models for SessionAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import IssuedSession
from auth.tokens import password_policy_error

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain part.
# Deliverability is the notifier's problem, not the schema's.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_Email = Annotated[str, Field(pattern=EMAIL_PATTERN, max_length=255)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class EmailMixin(BaseModel):
    """Trims the email before pattern validation. Passwords are never trimmed."""

    email: _Email

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value


class LoginRequest(EmailMixin):
    """Request body for POST /api/v1/auth/login.

    No password policy here: a login attempt with a too-short password is just
    a wrong password, and must fail with the same generic error.
    """

    password: str = Field(min_length=1, max_length=255)


class NewPasswordMixin(BaseModel):
    """Applies the password policy (length in characters and bcrypt byte limit)."""

    password: str

    @field_validator("password")
    @classmethod
    def check_policy(cls, value: str) -> str:
        error = password_policy_error(value)
        if error:
            raise ValueError(error)
        return value


class SignupRequest(EmailMixin, NewPasswordMixin):
    """Request body for POST /api/v1/auth/signup."""


class PasswordResetRequest(EmailMixin):
    """Request body for POST /api/v1/auth/password-reset."""


class PasswordResetConfirm(NewPasswordMixin):
    """Request body for POST /api/v1/auth/password-reset/confirm."""

    token: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """Returned by login and signup. The same token is also set as the session cookie.

    access_token is included for API clients that send Authorization: Bearer
    instead of keeping a cookie jar.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_at: str
    user_id: int
    email: str

    @classmethod
    def from_issued(cls, issued: IssuedSession) -> "SessionResponse":
        """Build a SessionResponse from a domain IssuedSession."""
        return cls(
            access_token=issued.token,
            expires_at=issued.expires_at.isoformat(),
            user_id=issued.user.id,
            email=issued.user.email,
        )


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str


class TokenValidityResponse(BaseModel):
    """Response for GET /api/v1/auth/password-reset/validate."""

    model_config = ConfigDict(frozen=True)

    valid: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sessions_revoked: int


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
    components: dict[str, str]
