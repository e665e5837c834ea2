"""
auth/reset.py -- Password reset: issue, validate, and consume single-use tokens.

Per-user state machine:

    NoToken --request_reset--> TokenIssued --consume_reset--> Consumed
                                   |  \\
                                   |   `--request_reset----> Superseded (new TokenIssued)
                                   `--expires_at passes----> Expired

Security properties:
  Enumeration resistance: request_reset() behaves identically for unknown
      and known emails from the caller's point of view. It never returns or
      raises anything that depends on whether the email is registered.
      The HTTP layers run it through request_reset_in_background() after the
      response has been sent, so response time does not depend on it either.

  Single use: consume_reset() deletes the token inside the same transaction
      that rotates the password, conditional on the token still being live.
      A second consumer (sequential or concurrent) sees INVALID_OR_EXPIRED_TOKEN.

  Session invalidation: a successful reset deletes every session of the user,
      so a credential compromise that triggered the reset does not leave the
      attacker's sessions alive.

Delivery is out of scope: the flow builds the reset URL and hands it to a
ResetNotifier. LoggingNotifier is the default and only records that a link was
issued (the link itself only in DEBUG).

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Protocol
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError

from auth.models import (
    INVALID_OR_EXPIRED_TOKEN,
    AuthError,
    OperationalFailure,
    PasswordResetToken,
    UserIdentity,
    invalid_password,
)
from auth.sessions import MAX_TOKEN_ATTEMPTS, Clock, utcnow
from auth.store import AuthStore, to_iso
from auth.tokens import generate_token, hash_password, hash_token, password_policy_error

logger = logging.getLogger("sessionauth.reset")


class ResetNotifier(Protocol):
    """Delivers a reset link to the account holder (email, SMS, queue...)."""

    def send_reset_link(self, email: str, reset_url: str, expires_at: datetime) -> None: ...


class LoggingNotifier:
    """Stand-in notifier that writes to the log instead of sending mail.

    The raw link is a bearer credential, so it is only logged when
    reveal_links is True (DEBUG deployments).
    """

    def __init__(self, reveal_links: bool = False) -> None:
        self.reveal_links = reveal_links

    def send_reset_link(self, email: str, reset_url: str, expires_at: datetime) -> None:
        if self.reveal_links:
            logger.info("Password reset link for %s (expires %s): %s", email, expires_at.isoformat(), reset_url)
        else:
            logger.info("Password reset link issued (expires %s)", expires_at.isoformat())


class PasswordResetFlow:
    """Issues, validates and consumes password reset tokens.

    Usage:
        flow = PasswordResetFlow(store, ttl_seconds=3600, reset_url_base="https://app/reset-password")
        flow.request_reset("a@x.com")                    # always None
        flow.validate_token(token)                       # bool, does not consume
        result = flow.consume_reset(token, "new-pass")   # UserIdentity | AuthError
    """

    def __init__(
        self,
        store: AuthStore,
        ttl_seconds: int,
        reset_url_base: str,
        notifier: ResetNotifier | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.reset_url_base = reset_url_base
        self.notifier: ResetNotifier = notifier or LoggingNotifier()
        self.clock = clock

    def build_reset_url(self, token: str) -> str:
        return f"{self.reset_url_base}?{urlencode({'token': token})}"

    def request_reset(self, email: str) -> None:
        """Issue a fresh reset token for email, superseding any previous one.

        Unknown emails are a silent no-op. Notifier failures are logged and
        not re-raised: the caller's response must not differ between known
        and unknown emails.
        """
        user = self.store.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unregistered email")
            return

        expires_at = self.clock() + self.ttl
        token = self._store_new_token(user.id, expires_at)
        logger.info("Password reset token issued for user_id=%s", user.id)

        try:
            self.notifier.send_reset_link(user.email, self.build_reset_url(token), expires_at)
        except Exception:
            logger.exception("Reset notifier failed for user_id=%s", user.id)

    def request_reset_in_background(self, email: str) -> None:
        """Background-task entry point for request_reset().

        The HTTP layers schedule this after the response is sent, so the
        lookup, the token write and the notifier call add no latency that
        differs between known and unknown emails. There is no caller left to
        report a store outage to, so OperationalFailure is logged here.
        """
        try:
            self.request_reset(email)
        except OperationalFailure:
            logger.exception("Password reset request could not reach the store")

    def _store_new_token(self, user_id: int, expires_at: datetime) -> str:
        # IntegrityError here is either a digest collision or a concurrent
        # request for the same user committing first; both are resolved by
        # replacing again with a new token.
        for _attempt in range(MAX_TOKEN_ATTEMPTS):
            token = generate_token()
            try:
                self.store.replace_reset_token(
                    PasswordResetToken(user_id=user_id, token_hash=hash_token(token), expires_at=to_iso(expires_at))
                )
            except IntegrityError:
                logger.warning("Reset token insert conflict for user_id=%s -- retrying", user_id)
                continue
            return token
        raise OperationalFailure("Could not allocate a unique reset token.")

    def validate_token(self, token: str | None) -> bool:
        """True iff the token exists and is unexpired. Does not consume it."""
        if not token:
            return False
        return self.store.get_live_reset_token(hash_token(token), to_iso(self.clock())) is not None

    def consume_reset(self, token: str | None, new_password: str) -> UserIdentity | AuthError:
        """Rotate the password behind a live reset token and burn the token.

        Validity is re-checked inside the consuming transaction; an earlier
        validate_token() result is never trusted. On failure nothing changes;
        in particular a new password that breaks policy returns INVALID_PASSWORD
        and leaves the token live for another attempt.
        """
        if not token:
            return INVALID_OR_EXPIRED_TOKEN
        if policy_error := password_policy_error(new_password):
            return invalid_password(policy_error)
        # Hash outside the transaction: bcrypt is deliberately slow and must
        # not hold a write lock.
        new_hash = hash_password(new_password)
        identity = self.store.consume_reset_token(hash_token(token), to_iso(self.clock()), new_hash)
        if identity is None:
            logger.info("Password reset rejected: token invalid, expired or already used")
            return INVALID_OR_EXPIRED_TOKEN
        logger.info("Password reset completed for user_id=%s; all sessions revoked", identity.id)
        return identity

    def purge_expired(self) -> int:
        """Reap expired reset token rows. Not part of any request's hot path."""
        count = self.store.purge_expired_reset_tokens(to_iso(self.clock()))
        if count:
            logger.info("Purged %d expired reset token(s)", count)
        return count
