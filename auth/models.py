"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and services do the work.

Domain failures are VALUES, not exceptions: gateway and reset operations
return either a success dataclass or an AuthError, and callers branch with
isinstance(). Only OperationalFailure (the database is unreachable, a lock
timed out) is raised, because no caller can act on it except by reporting a
generic "try again".

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


@dataclass
class User:
    """A registered account.

    email is stored normalised (trimmed, lower-cased) so uniqueness is
    case-insensitive. password_hash is an opaque bcrypt digest, never the
    plaintext.
    """

    email: str
    password_hash: str
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """A login session bound to a bearer token.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw token lives
    only in the caller's cookie.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class PasswordResetToken:
    """A single-use, time-limited credential for rotating a password.

    At most one row exists per user (UNIQUE user_id); issuing a new token
    replaces the previous one.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None


@dataclass(frozen=True)
class UserIdentity:
    """The public view of a user -- what a validated session resolves to."""

    id: int
    email: str


@dataclass(frozen=True)
class IssuedSession:
    """Returned by login/signup. token is the raw bearer credential."""

    token: str
    expires_at: datetime
    user: UserIdentity


class AuthErrorCode(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ALREADY_REGISTERED = "already_registered"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    UNAUTHENTICATED = "unauthenticated"
    INVALID_PASSWORD = "invalid_password"


@dataclass(frozen=True)
class AuthError:
    """A user-facing domain failure. message is safe to display verbatim."""

    code: AuthErrorCode
    message: str


INVALID_CREDENTIALS = AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid email or password.")
ALREADY_REGISTERED = AuthError(AuthErrorCode.ALREADY_REGISTERED, "Email already registered.")
INVALID_OR_EXPIRED_TOKEN = AuthError(
    AuthErrorCode.INVALID_OR_EXPIRED_TOKEN,
    "This password reset link is invalid or has expired. Please request a new one.",
)
UNAUTHENTICATED = AuthError(AuthErrorCode.UNAUTHENTICATED, "Authentication required.")


def invalid_password(message: str) -> AuthError:
    """A new password that breaks policy. message comes from auth.tokens.password_policy_error()."""
    return AuthError(AuthErrorCode.INVALID_PASSWORD, message)


class OperationalFailure(Exception):
    """The persistent store could not complete a call (connectivity, timeout, lock).

    Raised by auth.store and propagated unchanged by the services above it.
    Never retried in this layer. Transactions are rolled back before this is
    raised, so no partial state is left behind.
    """
