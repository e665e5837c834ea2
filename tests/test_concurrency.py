"""
tests/test_concurrency.py -- Racing reset requests and reset consumption.

The store is the only serialization point, so these tests hit it from several
threads at once. A file-backed SQLite database is used (not the shared-memory
URI from conftest) so that writers contend on real database locks the way
they do in production.

Each round releases all threads through a Barrier so the calls overlap.
"""

from __future__ import annotations

from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from auth.models import INVALID_OR_EXPIRED_TOKEN, User, UserIdentity
from auth.reset import PasswordResetFlow
from auth.store import AuthStore
from auth.tokens import hash_password, verify_password

from conftest import FakeClock, RecordingNotifier

THREADS = 4
ROUNDS = 5


@pytest.fixture
def file_store(tmp_path) -> Generator[AuthStore, None, None]:
    s = AuthStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def flow(file_store: AuthStore) -> tuple[PasswordResetFlow, RecordingNotifier]:
    notifier = RecordingNotifier()
    reset_flow = PasswordResetFlow(
        file_store,
        ttl_seconds=3600,
        reset_url_base="http://testserver/reset-password",
        notifier=notifier,
        clock=FakeClock(),
    )
    return reset_flow, notifier


def _race(fn, args: list) -> list:
    """Run fn(arg) for every arg on its own thread, all released together."""
    barrier = Barrier(len(args))

    def run(arg):
        barrier.wait()
        return fn(arg)

    with ThreadPoolExecutor(max_workers=len(args)) as pool:
        return [f.result() for f in [pool.submit(run, a) for a in args]]


class TestConcurrentConsume:
    def test_exactly_one_consumer_wins(self, flow, file_store: AuthStore) -> None:
        reset_flow, notifier = flow
        user_id = file_store.create_user(User(email="race@example.com", password_hash=hash_password("oldpass1")))

        for round_no in range(ROUNDS):
            reset_flow.request_reset("race@example.com")
            token = notifier.last_token
            passwords = [f"round{round_no}-thread{i}" for i in range(THREADS)]

            results = _race(lambda pw: reset_flow.consume_reset(token, pw), passwords)

            winners = [pw for pw, r in zip(passwords, results) if isinstance(r, UserIdentity)]
            losers = [r for r in results if not isinstance(r, UserIdentity)]
            assert len(winners) == 1
            assert losers == [INVALID_OR_EXPIRED_TOKEN] * (THREADS - 1)
            # The stored password is the winner's, not a later loser's.
            assert verify_password(winners[0], file_store.get_by_id(user_id).password_hash)
            assert file_store.count_reset_tokens(user_id) == 0


class TestConcurrentRequest:
    def test_one_live_token_after_racing_requests(self, flow, file_store: AuthStore) -> None:
        reset_flow, notifier = flow
        user_id = file_store.create_user(User(email="race@example.com", password_hash="h"))

        for _round in range(ROUNDS):
            notifier.sent.clear()
            _race(reset_flow.request_reset, ["race@example.com"] * THREADS)

            assert file_store.count_reset_tokens(user_id) == 1
            assert len(notifier.sent) == THREADS
            tokens = [url.split("token=", 1)[1] for _email, url, _expires in notifier.sent]
            assert sum(reset_flow.validate_token(t) for t in tokens) == 1
