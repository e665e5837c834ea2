"""
auth/gateway.py -- Login, signup, logout and current-user use cases.

The gateway orchestrates the password hasher and SessionManager against the
user records in AuthStore. It never touches a framework request or response:
every operation takes an AuthContext, which carries the presented bearer
token in and the cookie change (set or clear) out. The HTTP layer builds the
context from the request and applies it to the response afterwards.

Results are values, not exceptions:
    result = gateway.login(ctx, email, password)
    if isinstance(result, AuthError):
        ...show result.message...
    else:
        ...result is an IssuedSession...

Enumeration resistance: login returns the same INVALID_CREDENTIALS for an
unknown email and for a wrong password, and runs bcrypt in both cases so
response time does not tell them apart either.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from auth.models import (
    ALREADY_REGISTERED,
    INVALID_CREDENTIALS,
    UNAUTHENTICATED,
    AuthError,
    IssuedSession,
    OperationalFailure,
    User,
    UserIdentity,
    invalid_password,
)
from auth.sessions import MAX_TOKEN_ATTEMPTS, SessionManager
from auth.store import AuthStore, normalize_email, to_iso
from auth.tokens import (
    burn_verification,
    clear_session_cookie,
    generate_token,
    hash_password,
    hash_token,
    password_policy_error,
    read_bearer_token,
    set_session_cookie,
    verify_password,
)

logger = logging.getLogger("sessionauth.auth")


@dataclass
class AuthContext:
    """Explicit per-request carrier for the bearer credential.

    token:        the raw token the client presented (cookie or Bearer header).
    issued:       a session created during this request; its cookie must be set.
    clear_cookie: the client's cookie must be expired (logout, stale token).
    """

    token: str | None = None
    issued: IssuedSession | None = None
    clear_cookie: bool = False

    @classmethod
    def from_request(cls, request) -> "AuthContext":
        return cls(token=read_bearer_token(request.cookies, request.headers))

    def apply(self, response) -> None:
        """Write the pending cookie change onto a Starlette response."""
        if self.issued is not None:
            set_session_cookie(response, self.issued.token, self.issued.expires_at)
        elif self.clear_cookie:
            clear_session_cookie(response)


class AuthGateway:
    """Entry point for the credential use cases.

    Usage:
        gateway = AuthGateway(store, SessionManager(store, ttl_seconds=604800))
        ctx = AuthContext.from_request(request)
        result = gateway.signup(ctx, "a@x.com", "secret1")
        ctx.apply(response)
    """

    def __init__(self, store: AuthStore, sessions: SessionManager) -> None:
        self.store = store
        self.sessions = sessions

    def login(self, ctx: AuthContext, email: str, password: str) -> IssuedSession | AuthError:
        """Verify credentials and open a new session.

        Always runs bcrypt whether or not the email exists:
        - Unknown email: bcrypt runs against a dummy hash (same cost)
        - Wrong password: bcrypt runs against the real hash (same cost)
        """
        user = self.store.get_by_email(email)
        if user is None:
            burn_verification(password)
            logger.info("Login failed: bad credentials")
            return INVALID_CREDENTIALS
        if not verify_password(password, user.password_hash):
            logger.info("Login failed: bad credentials")
            return INVALID_CREDENTIALS

        issued = self.sessions.issue_for(UserIdentity(id=user.id, email=user.email))
        ctx.issued = issued
        ctx.token = issued.token
        logger.info("Login succeeded for user_id=%s", user.id)
        return issued

    def signup(self, ctx: AuthContext, email: str, password: str) -> IssuedSession | AuthError:
        """Register a new account and open its first session.

        The user row and the session row are written in one transaction;
        if either fails, neither persists. A concurrent signup for the same
        email that commits first turns this call into ALREADY_REGISTERED.

        A password that breaks policy (too short, over 72 UTF-8 bytes) is an
        INVALID_PASSWORD value; nothing is read or written.
        """
        if policy_error := password_policy_error(password):
            return invalid_password(policy_error)
        email = normalize_email(email)
        if self.store.get_by_email(email) is not None:
            logger.info("Signup rejected: email already registered")
            return ALREADY_REGISTERED

        password_hash = hash_password(password)
        expires_at = self.sessions.new_expiry()
        for _attempt in range(MAX_TOKEN_ATTEMPTS):
            token = generate_token()
            try:
                user_id = self.store.create_user_with_session(
                    User(email=email, password_hash=password_hash),
                    token_hash=hash_token(token),
                    expires_at=to_iso(expires_at),
                )
            except IntegrityError:
                if self.store.get_by_email(email) is not None:
                    logger.info("Signup rejected: email registered concurrently")
                    return ALREADY_REGISTERED
                logger.warning("Session token collision during signup -- regenerating")
                continue
            issued = IssuedSession(token=token, expires_at=expires_at, user=UserIdentity(id=user_id, email=email))
            ctx.issued = issued
            ctx.token = token
            logger.info("Signup succeeded for user_id=%s", user_id)
            return issued
        raise OperationalFailure("Could not allocate a unique session token.")

    def logout(self, ctx: AuthContext) -> None:
        """Revoke the presented session (if any) and clear the client cookie. Idempotent."""
        self.sessions.revoke(ctx.token)
        ctx.token = None
        ctx.issued = None
        ctx.clear_cookie = True

    def logout_everywhere(self, ctx: AuthContext) -> int | AuthError:
        """Revoke every session of the current user, including this one."""
        identity = self.require_user(ctx)
        if isinstance(identity, AuthError):
            return identity
        count = self.sessions.revoke_all(identity.id)
        ctx.token = None
        ctx.issued = None
        ctx.clear_cookie = True
        return count

    def current_user(self, ctx: AuthContext) -> UserIdentity | None:
        """Resolve the presented bearer token to an identity, or None."""
        return self.sessions.validate(ctx.token)

    def require_user(self, ctx: AuthContext) -> UserIdentity | AuthError:
        """Like current_user(), but the failure is an explicit UNAUTHENTICATED value."""
        identity = self.current_user(ctx)
        if identity is None:
            return UNAUTHENTICATED
        return identity
