"""
auth/tokens.py -- Password hashing, bearer-token generation, and cookie transport.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). Bcrypt is the right
       choice for low-entropy secrets because its cost factor (BCRYPT_ROUNDS)
       makes brute-force expensive. Every hash carries its own random salt,
       so hashing the same password twice yields two different digests that
       both verify. The _DUMMY_HASH constant enables timing equalization in
       the login path so response time does not reveal whether an email is
       registered.

  Tokens: secrets.token_hex(32) gives 256 bits of entropy from the OS CSPRNG.
       Session and reset tokens share this generator. The raw token is handed
       to the client exactly once (cookie or reset link); the store keeps only
       HMAC-SHA256(SECRET_KEY, token). The digest is deterministic, so lookup
       by token stays an O(1) indexed query -- bcrypt's intentional slowness is
       unnecessary for 256-bit random values.

  Cookie: one cookie, "session_token" by default. HttpOnly, SameSite=Lax,
       Path=/, Secure per Settings.secure_cookies, Expires equal to the
       session's expires_at so browser and server agree on lifetime.

Layer rule: no imports from api/ or web/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime

import bcrypt

from core.config import get_settings

logger = logging.getLogger("sessionauth.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

# bcrypt only looks at the first 72 bytes of its input. bcrypt>=5 rejects
# longer inputs outright, so the limit is part of the password policy.
MAX_PASSWORD_BYTES = 72

# 32 random bytes -> 64 hex characters.
TOKEN_BYTES = 32

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def password_policy_error(plain: str) -> str | None:
    """Return a user-facing message if the password breaks policy, else None."""
    if len(plain) < _settings.password_min_length:
        return f"Password must be at least {_settings.password_min_length} characters."
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes."
    return None


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Raises ValueError if the password exceeds MAX_PASSWORD_BYTES when encoded
    as UTF-8. The API and web layers validate length before calling this, so
    the error only surfaces on programmer misuse.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=_settings.bcrypt_rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares digests in constant time. Any malformed digest,
    oversized password or encoding problem returns False rather than raising,
    so a caller cannot tell error classes apart.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError, AttributeError):
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email does not exist -- bcrypt's constant work factor equalizes timing
# and prevents email enumeration via response-time differences.
_DUMMY_HASH: str = hash_password("sessionauth_timing_dummy")


def burn_verification(plain: str) -> None:
    """Run a throwaway bcrypt check so unknown-email logins cost the same as real ones."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Token generation and at-rest digest
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Generate a new bearer token: 64 hex chars (256 bits) from the OS CSPRNG.

    Collision probability is negligible; the store still enforces a UNIQUE
    constraint on the digest and callers regenerate on the rare collision.
    """
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Using SECRET_KEY as the HMAC key means a leaked database does not yield
    usable session cookies or reset links without also knowing SECRET_KEY.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expires_at: datetime) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": cookie sent on same-site navigations and top-level GET
        cross-site links, but not on cross-site POST.
    secure: only sent over HTTPS when secure_cookies resolves to True
        (the default outside DEBUG).
    expires: the session's own expires_at, so cookie and row expire together.

    Args:
        response:   FastAPI/Starlette response object.
        token:      Raw session token.
        expires_at: Timezone-aware session expiry.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=token,
        expires=expires_at,
        path="/",
        httponly=True,
        samesite="lax",
        secure=bool(_settings.secure_cookies),
    )


def clear_session_cookie(response) -> None:
    """Expire the session cookie on the client. Attributes must match set_session_cookie()."""
    response.delete_cookie(
        _settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=bool(_settings.secure_cookies),
    )


def read_bearer_token(cookies, headers) -> str | None:
    """Return the presented bearer token, or None.

    Priority:
      1. Session cookie -- set by the web UI and the JSON login endpoint.
      2. Authorization: Bearer header -- for API clients without a cookie jar.
    """
    token = cookies.get(_settings.session_cookie_name)
    if token:
        return token
    auth_header = headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None
