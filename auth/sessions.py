"""
auth/sessions.py -- Session lifecycle: issue, validate, revoke, reap.

A session is a row in the sessions table keyed by the digest of an opaque
bearer token. It is valid iff the row exists and now < expires_at. Expiry is
lazy: validate() ignores expired rows without deleting them, and
purge_expired() removes them from a periodic job.

Multiple concurrent sessions per user are allowed (one per device/browser).

The clock is injected so tests can move time forward without sleeping.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError

from auth.models import IssuedSession, OperationalFailure, Session, UserIdentity
from auth.store import AuthStore, to_iso
from auth.tokens import generate_token, hash_token

logger = logging.getLogger("sessionauth.sessions")

Clock = Callable[[], datetime]

# A 256-bit token colliding even once is already astronomically unlikely;
# failing three times in a row means something other than chance is wrong.
MAX_TOKEN_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Issues and checks bearer sessions against an AuthStore.

    Usage:
        sessions = SessionManager(store, ttl_seconds=7 * 24 * 3600)
        token, expires_at = sessions.issue(user_id)
        identity = sessions.validate(token)   # UserIdentity or None
        sessions.revoke(token)
    """

    def __init__(self, store: AuthStore, ttl_seconds: int, clock: Clock = utcnow) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def new_expiry(self) -> datetime:
        """Return the expires_at a session created right now would get."""
        return self.clock() + self.ttl

    def issue(self, user_id: int) -> tuple[str, datetime]:
        """Create a session for user_id and return (raw_token, expires_at).

        The caller is responsible for handing the token to the transport
        layer (auth.tokens.set_session_cookie) with the same expires_at.
        Retries with a fresh token on a digest collision.
        """
        expires_at = self.new_expiry()
        for _attempt in range(MAX_TOKEN_ATTEMPTS):
            token = generate_token()
            try:
                self.store.create_session(
                    Session(user_id=user_id, token_hash=hash_token(token), expires_at=to_iso(expires_at))
                )
            except IntegrityError:
                logger.warning("Session token collision for user_id=%s -- regenerating", user_id)
                continue
            logger.info("Session issued for user_id=%s", user_id)
            return token, expires_at
        raise OperationalFailure("Could not allocate a unique session token.")

    def issue_for(self, user: UserIdentity) -> IssuedSession:
        token, expires_at = self.issue(user.id)
        return IssuedSession(token=token, expires_at=expires_at, user=user)

    def validate(self, token: str | None) -> UserIdentity | None:
        """Return the identity behind a live session token, or None.

        None covers: no token, unknown token, revoked token, and expired token
        (expires_at <= now). Expired rows are left in place.
        """
        if not token:
            return None
        return self.store.get_session_identity(hash_token(token), to_iso(self.clock()))

    def revoke(self, token: str | None) -> bool:
        """Delete the session for this token. Idempotent: returns False if already gone."""
        if not token:
            return False
        removed = self.store.delete_session(hash_token(token))
        if removed:
            logger.info("Session revoked")
        return removed

    def revoke_all(self, user_id: int) -> int:
        """Delete every session a user holds ("log out everywhere")."""
        count = self.store.delete_user_sessions(user_id)
        logger.info("Revoked %d session(s) for user_id=%s", count, user_id)
        return count

    def purge_expired(self) -> int:
        """Reap expired session rows. Not part of any request's hot path."""
        count = self.store.purge_expired_sessions(to_iso(self.clock()))
        if count:
            logger.info("Purged %d expired session(s)", count)
        return count
