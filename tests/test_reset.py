"""
tests/test_reset.py -- Unit tests for the password reset flow.

Covers:
  - unknown email is a silent no-op (no token, no notification)
  - a new request supersedes the previous token
  - tokens are single-use and expire after the reset TTL
  - consuming a token rotates the password and revokes every session
  - notifier failures never reach the caller
  - a background reset request logs store outages instead of raising
  - a policy-breaking new password is refused without burning the token
"""

from __future__ import annotations

from datetime import datetime

import pytest

from auth.models import INVALID_OR_EXPIRED_TOKEN, AuthError, AuthErrorCode, OperationalFailure, User, UserIdentity
from auth.reset import LoggingNotifier, PasswordResetFlow
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import hash_password, verify_password


@pytest.fixture
def user_id(store: AuthStore) -> int:
    return store.create_user(User(email="r@example.com", password_hash=hash_password("oldpass1")))


class TestRequestReset:
    def test_unknown_email_is_noop(self, reset_flow: PasswordResetFlow, notifier) -> None:
        assert reset_flow.request_reset("nobody@example.com") is None
        assert notifier.sent == []

    def test_known_email_sends_link(self, reset_flow: PasswordResetFlow, notifier, user_id: int, clock) -> None:
        reset_flow.request_reset("R@Example.com")
        assert len(notifier.sent) == 1
        email, url, expires_at = notifier.sent[0]
        assert email == "r@example.com"
        assert url.startswith("http://testserver/reset-password?token=")
        assert expires_at == clock() + reset_flow.ttl
        assert reset_flow.validate_token(notifier.last_token)

    def test_new_request_supersedes_old_token(
        self, reset_flow: PasswordResetFlow, notifier, store: AuthStore, user_id: int
    ) -> None:
        reset_flow.request_reset("r@example.com")
        first = notifier.last_token
        reset_flow.request_reset("r@example.com")
        second = notifier.last_token

        assert first != second
        assert store.count_reset_tokens(user_id) == 1
        assert reset_flow.validate_token(first) is False
        assert reset_flow.validate_token(second) is True
        assert reset_flow.consume_reset(first, "newpass1") == INVALID_OR_EXPIRED_TOKEN

    def test_notifier_failure_is_swallowed(self, store: AuthStore, clock, user_id: int) -> None:
        class ExplodingNotifier:
            def send_reset_link(self, email: str, reset_url: str, expires_at: datetime) -> None:
                raise ConnectionError("smtp down")

        flow = PasswordResetFlow(
            store, ttl_seconds=3600, reset_url_base="http://x/reset", notifier=ExplodingNotifier(), clock=clock
        )
        assert flow.request_reset("r@example.com") is None
        # The token was still issued.
        assert store.count_reset_tokens(user_id) == 1

    def test_background_request_logs_store_outage(
        self, reset_flow: PasswordResetFlow, store: AuthStore, monkeypatch: pytest.MonkeyPatch, caplog
    ) -> None:
        def unavailable(email: str):
            raise OperationalFailure("database is locked")

        monkeypatch.setattr(store, "get_by_email", unavailable)
        with caplog.at_level("ERROR", logger="sessionauth.reset"):
            assert reset_flow.request_reset_in_background("r@example.com") is None
        assert "could not reach the store" in caplog.text

    def test_background_request_issues_link(self, reset_flow: PasswordResetFlow, notifier, user_id: int) -> None:
        reset_flow.request_reset_in_background("r@example.com")
        assert len(notifier.sent) == 1
        assert reset_flow.validate_token(notifier.last_token)

    def test_logging_notifier_hides_link_unless_revealed(self, caplog: pytest.LogCaptureFixture) -> None:
        url = "http://x/reset?token=secret-token"
        with caplog.at_level("INFO", logger="sessionauth.reset"):
            LoggingNotifier().send_reset_link("a@example.com", url, datetime(2026, 1, 1))
            assert "secret-token" not in caplog.text
            LoggingNotifier(reveal_links=True).send_reset_link("a@example.com", url, datetime(2026, 1, 1))
            assert "secret-token" in caplog.text


class TestValidateToken:
    @pytest.mark.parametrize("token", [None, "", "f" * 64])
    def test_invalid_tokens(self, reset_flow: PasswordResetFlow, token) -> None:
        assert reset_flow.validate_token(token) is False

    def test_validate_does_not_consume(self, reset_flow: PasswordResetFlow, notifier, user_id: int) -> None:
        reset_flow.request_reset("r@example.com")
        token = notifier.last_token
        assert reset_flow.validate_token(token)
        assert reset_flow.validate_token(token)
        assert isinstance(reset_flow.consume_reset(token, "newpass1"), UserIdentity)


class TestConsumeReset:
    def test_rotates_password(self, reset_flow: PasswordResetFlow, notifier, store: AuthStore, user_id: int) -> None:
        reset_flow.request_reset("r@example.com")
        result = reset_flow.consume_reset(notifier.last_token, "brandnew1")

        assert isinstance(result, UserIdentity)
        assert result.id == user_id
        stored = store.get_by_id(user_id).password_hash
        assert verify_password("brandnew1", stored)
        assert not verify_password("oldpass1", stored)

    def test_single_use(self, reset_flow: PasswordResetFlow, notifier, store: AuthStore, user_id: int) -> None:
        reset_flow.request_reset("r@example.com")
        token = notifier.last_token
        assert isinstance(reset_flow.consume_reset(token, "first111"), UserIdentity)

        second = reset_flow.consume_reset(token, "second22")
        assert isinstance(second, AuthError)
        assert second == INVALID_OR_EXPIRED_TOKEN
        assert verify_password("first111", store.get_by_id(user_id).password_hash)

    def test_expired_after_ttl(
        self, reset_flow: PasswordResetFlow, notifier, store: AuthStore, user_id: int, clock
    ) -> None:
        reset_flow.request_reset("r@example.com")
        token = notifier.last_token
        clock.advance(minutes=61)

        assert reset_flow.validate_token(token) is False
        assert reset_flow.consume_reset(token, "toolate1") == INVALID_OR_EXPIRED_TOKEN
        assert verify_password("oldpass1", store.get_by_id(user_id).password_hash)

    def test_still_valid_just_before_ttl(self, reset_flow: PasswordResetFlow, notifier, user_id: int, clock) -> None:
        reset_flow.request_reset("r@example.com")
        clock.advance(minutes=59)
        assert isinstance(reset_flow.consume_reset(notifier.last_token, "intime11"), UserIdentity)

    def test_revokes_all_sessions(
        self, reset_flow: PasswordResetFlow, notifier, sessions: SessionManager, user_id: int
    ) -> None:
        tokens = [sessions.issue(user_id)[0] for _ in range(2)]
        reset_flow.request_reset("r@example.com")
        reset_flow.consume_reset(notifier.last_token, "brandnew1")
        assert all(sessions.validate(t) is None for t in tokens)

    @pytest.mark.parametrize("password", ["y" * 73, "\u00e9" * 40, "abc"])
    def test_policy_breaking_password_keeps_token(
        self, reset_flow: PasswordResetFlow, notifier, store: AuthStore, user_id: int, password: str
    ) -> None:
        reset_flow.request_reset("r@example.com")
        token = notifier.last_token

        result = reset_flow.consume_reset(token, password)
        assert isinstance(result, AuthError)
        assert result.code is AuthErrorCode.INVALID_PASSWORD
        assert reset_flow.validate_token(token) is True
        assert verify_password("oldpass1", store.get_by_id(user_id).password_hash)
        assert isinstance(reset_flow.consume_reset(token, "fixedpw1"), UserIdentity)

    @pytest.mark.parametrize("token", [None, "", "0" * 64])
    def test_unknown_token(self, reset_flow: PasswordResetFlow, token) -> None:
        assert reset_flow.consume_reset(token, "whatever1") == INVALID_OR_EXPIRED_TOKEN


class TestPurge:
    def test_purge_expired(self, reset_flow: PasswordResetFlow, store: AuthStore, user_id: int, clock) -> None:
        reset_flow.request_reset("r@example.com")
        assert reset_flow.purge_expired() == 0
        clock.advance(hours=2)
        assert reset_flow.purge_expired() == 1
        assert store.count_reset_tokens(user_id) == 0
