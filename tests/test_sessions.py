"""
tests/test_sessions.py -- Unit tests for SessionManager against a real in-memory store.

The FakeClock fixture stands in for wall time, so expiry is tested by moving
the clock rather than sleeping.
"""

from __future__ import annotations

import pytest

from auth.models import OperationalFailure, User
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import hash_token


@pytest.fixture
def user_id(store: AuthStore) -> int:
    return store.create_user(User(email="s@example.com", password_hash="h"))


class TestIssueAndValidate:
    def test_issue_then_validate(self, sessions: SessionManager, user_id: int, clock) -> None:
        token, expires_at = sessions.issue(user_id)
        assert expires_at == clock() + sessions.ttl
        identity = sessions.validate(token)
        assert identity is not None
        assert identity.id == user_id
        assert identity.email == "s@example.com"

    def test_raw_token_not_stored(self, sessions: SessionManager, store: AuthStore, user_id: int) -> None:
        token, _ = sessions.issue(user_id)
        assert store.get_session(token) is None
        assert store.get_session(hash_token(token)) is not None

    @pytest.mark.parametrize("token", [None, "", "0" * 64, "not-a-token"])
    def test_unknown_tokens_are_anonymous(self, sessions: SessionManager, token) -> None:
        assert sessions.validate(token) is None

    def test_multiple_sessions_per_user(self, sessions: SessionManager, user_id: int) -> None:
        first, _ = sessions.issue(user_id)
        second, _ = sessions.issue(user_id)
        assert first != second
        assert sessions.validate(first).id == user_id
        assert sessions.validate(second).id == user_id


class TestExpiry:
    def test_valid_until_expiry(self, sessions: SessionManager, user_id: int, clock) -> None:
        token, _ = sessions.issue(user_id)
        clock.advance(seconds=sessions.ttl.total_seconds() - 1)
        assert sessions.validate(token) is not None

    def test_expired_at_exact_expiry(self, sessions: SessionManager, user_id: int, clock) -> None:
        token, _ = sessions.issue(user_id)
        clock.advance(seconds=sessions.ttl.total_seconds())
        assert sessions.validate(token) is None

    def test_expiry_is_lazy_until_purged(
        self, sessions: SessionManager, store: AuthStore, user_id: int, clock
    ) -> None:
        token, _ = sessions.issue(user_id)
        clock.advance(days=8)
        assert sessions.validate(token) is None
        assert store.get_session(hash_token(token)) is not None

        assert sessions.purge_expired() == 1
        assert store.get_session(hash_token(token)) is None


class TestRevocation:
    def test_revoke_is_idempotent(self, sessions: SessionManager, user_id: int) -> None:
        token, _ = sessions.issue(user_id)
        assert sessions.revoke(token) is True
        assert sessions.validate(token) is None
        assert sessions.revoke(token) is False
        assert sessions.revoke(None) is False

    def test_revoke_only_that_session(self, sessions: SessionManager, user_id: int) -> None:
        first, _ = sessions.issue(user_id)
        second, _ = sessions.issue(user_id)
        sessions.revoke(first)
        assert sessions.validate(second) is not None

    def test_revoke_all(self, sessions: SessionManager, user_id: int) -> None:
        tokens = [sessions.issue(user_id)[0] for _ in range(3)]
        assert sessions.revoke_all(user_id) == 3
        assert all(sessions.validate(t) is None for t in tokens)


class TestTokenCollision:
    def test_collision_regenerates(
        self, sessions: SessionManager, user_id: int, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        tokens = iter(["dup" * 8, "dup" * 8, "fresh" * 8])
        monkeypatch.setattr("auth.sessions.generate_token", lambda: next(tokens))
        first, _ = sessions.issue(user_id)
        second, _ = sessions.issue(user_id)
        assert first == "dup" * 8
        assert second == "fresh" * 8

    def test_repeated_collision_is_operational_failure(
        self, sessions: SessionManager, user_id: int, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("auth.sessions.generate_token", lambda: "same" * 8)
        sessions.issue(user_id)
        with pytest.raises(OperationalFailure):
            sessions.issue(user_id)
