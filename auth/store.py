"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AuthStore is the repository; _row_to_user / _row_to_session / _row_to_reset_token
are the mappers. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Token columns hold HMAC digests (see auth.tokens.hash_token), never the
  raw bearer value. Both token_hash columns are UNIQUE; the caller retries
  with a fresh token on IntegrityError.

Transactions:
  Multi-statement operations run inside engine.begin() so they commit or roll
  back as a unit:
    create_user_with_session -- user row + first session
    replace_reset_token      -- delete previous token + insert new one
    consume_reset_token      -- conditional token delete + password update +
                                session revocation
  password_reset_tokens.user_id is UNIQUE, so two racing replace calls cannot
  leave two live tokens for one user: the loser gets IntegrityError.

Failure semantics:
  Any SQLAlchemyError other than IntegrityError (connectivity, lock timeout,
  missing table) is logged and re-raised as OperationalFailure. IntegrityError
  propagates unchanged because callers act on it (duplicate email, token
  collision).

Timestamps are fixed-width ISO 8601 UTC strings ("...T12:00:00.000000+00:00"),
so SQL string comparison on expires_at is chronological comparison.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import OperationalFailure, PasswordResetToken, Session, User, UserIdentity

logger = logging.getLogger("sessionauth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sessionauth.db'}"
_DEFAULT_TIMEOUT_SECONDS = 5.0

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # normalised lower-case
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # UNIQUE: at most one live reset token per user, enforced by the schema too.
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes ON DELETE
    CASCADE from sessions/password_reset_tokens to users actually fire.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO string (the storage format)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def normalize_email(email: str) -> str:
    """Trim and lower-case an email so uniqueness and lookup are case-insensitive."""
    return email.strip().lower()


@contextmanager
def _operational(action: str) -> Iterator[None]:
    """Translate store-level failures into OperationalFailure.

    IntegrityError passes through untouched -- it is a signal the caller
    handles (duplicate email, token collision), not an outage.
    """
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        logger.error("Store call %s failed: %s", action, exc.__class__.__name__)
        raise OperationalFailure(f"Store call {action} failed.") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for User, Session and PasswordResetToken records.

    Usage:
        store = AuthStore("sqlite:///auth.db")
        user_id = store.create_user(User(email="a@x.com", password_hash=hash_password("secret1")))
        user = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = _DEFAULT_TIMEOUT_SECONDS) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            # check_same_thread=False: FastAPI runs sync handlers in a thread
            # pool, so a pooled connection may be used from several threads.
            # timeout: how long a writer waits on a locked database.
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        else:
            connect_args["connect_timeout"] = max(1, int(timeout))
            engine_kwargs["pool_timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        with _operational("create_schema"):
            _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Database ping failed")
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = _now_iso()
        with _operational("create_user"), self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    password_hash=user.password_hash,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def create_user_with_session(self, user: User, token_hash: str, expires_at: str) -> int:
        """Insert a user and its first session in ONE transaction.

        If either insert fails (duplicate email, token digest collision)
        neither row persists. Raises IntegrityError in both cases; the caller
        distinguishes them by re-checking the email.
        """
        now = _now_iso()
        with _operational("create_user_with_session"), self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    password_hash=user.password_hash,
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
            conn.execute(
                _sessions.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    created_at=now,
                    expires_at=expires_at,
                )
            )
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by normalised email. Returns None if not found."""
        with _operational("get_by_email"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with _operational("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(self, user_id: int, password_hash: str) -> bool:
        """Replace a user's password hash. Returns False if user_id was not found."""
        with _operational("update_password"), self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_hash=password_hash, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user. Sessions and reset tokens cascade with it."""
        with _operational("delete_user"), self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> int:
        """Insert a session row. Raises IntegrityError on a token digest collision."""
        with _operational("create_session"), self.engine.begin() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token_hash=session.token_hash,
                    created_at=_now_iso(),
                    expires_at=session.expires_at,
                )
            )
            return result.inserted_primary_key[0]

    def get_session_identity(self, token_hash: str, now_iso: str) -> UserIdentity | None:
        """Return the owner of an unexpired session, joined with its user.

        Expired rows are filtered out here but NOT deleted (lazy expiry);
        purge_expired_sessions() reaps them out of band.
        """
        stmt = (
            select(_users.c.id, _users.c.email)
            .select_from(_sessions.join(_users, _sessions.c.user_id == _users.c.id))
            .where((_sessions.c.token_hash == token_hash) & (_sessions.c.expires_at > now_iso))
        )
        with _operational("get_session_identity"), self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return UserIdentity(id=row.id, email=row.email) if row is not None else None

    def get_session(self, token_hash: str) -> Session | None:
        """Return the raw session row for a digest, expired or not."""
        with _operational("get_session"), self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, user_id: int) -> list[Session]:
        """Return every stored session for a user (newest first), including expired ones."""
        with _operational("list_sessions"), self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_session(self, token_hash: str) -> bool:
        """Delete the session with this digest. Returns False if it was already gone."""
        with _operational("delete_session"), self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token_hash == token_hash))
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int) -> int:
        """Delete every session belonging to a user. Returns the number removed."""
        with _operational("delete_user_sessions"), self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def purge_expired_sessions(self, now_iso: str) -> int:
        """Delete sessions with expires_at <= now. Returns number of rows removed."""
        with _operational("purge_expired_sessions"), self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now_iso))
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def replace_reset_token(self, token: PasswordResetToken) -> int:
        """Supersede any existing reset token for the user with this one.

        Delete and insert share one transaction, so there is no window in
        which the user has zero or two tokens. Raises IntegrityError on a
        digest collision or when a concurrent replace committed first.
        """
        with _operational("replace_reset_token"), self.engine.begin() as conn:
            conn.execute(_reset_tokens.delete().where(_reset_tokens.c.user_id == token.user_id))
            result = conn.execute(
                _reset_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                )
            )
            return result.inserted_primary_key[0]

    def get_live_reset_token(self, token_hash: str, now_iso: str) -> PasswordResetToken | None:
        """Return the reset token if it exists and is unexpired. Does not consume it."""
        with _operational("get_live_reset_token"), self.engine.connect() as conn:
            row = conn.execute(
                _reset_tokens.select().where(
                    (_reset_tokens.c.token_hash == token_hash) & (_reset_tokens.c.expires_at > now_iso)
                )
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def get_reset_token_for_user(self, user_id: int) -> PasswordResetToken | None:
        """Return the user's stored reset token (live or expired), if any."""
        with _operational("get_reset_token_for_user"), self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.user_id == user_id)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def count_reset_tokens(self, user_id: int) -> int:
        with _operational("count_reset_tokens"), self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_reset_tokens).where(_reset_tokens.c.user_id == user_id)
            ).scalar()
        return result or 0

    def consume_reset_token(
        self,
        token_hash: str,
        now_iso: str,
        new_password_hash: str,
        revoke_sessions: bool = True,
    ) -> UserIdentity | None:
        """Atomically consume a reset token and rotate the owner's password.

        Inside one transaction:
          1. Find the token row, requiring expires_at > now.
          2. Delete it, again conditional on expires_at > now. rowcount != 1
             means a concurrent consumer got there first.
          3. Update the user's password_hash / updated_at.
          4. Optionally delete all of the user's sessions.

        Returns the user's identity on success, None if the token was missing,
        expired, or already consumed. Nothing is written in the None case.
        """
        with _operational("consume_reset_token"), self.engine.begin() as conn:
            row = conn.execute(
                select(_reset_tokens.c.id, _reset_tokens.c.user_id, _users.c.email)
                .select_from(_reset_tokens.join(_users, _reset_tokens.c.user_id == _users.c.id))
                .where((_reset_tokens.c.token_hash == token_hash) & (_reset_tokens.c.expires_at > now_iso))
            ).fetchone()
            if row is None:
                return None
            deleted = conn.execute(
                _reset_tokens.delete().where((_reset_tokens.c.id == row.id) & (_reset_tokens.c.expires_at > now_iso))
            ).rowcount
            if deleted != 1:
                return None
            conn.execute(
                _users.update()
                .where(_users.c.id == row.user_id)
                .values(password_hash=new_password_hash, updated_at=now_iso)
            )
            if revoke_sessions:
                conn.execute(_sessions.delete().where(_sessions.c.user_id == row.user_id))
            return UserIdentity(id=row.user_id, email=row.email)

    def purge_expired_reset_tokens(self, now_iso: str) -> int:
        """Delete reset tokens with expires_at <= now. Returns number of rows removed."""
        with _operational("purge_expired_reset_tokens"), self.engine.begin() as conn:
            result = conn.execute(_reset_tokens.delete().where(_reset_tokens.c.expires_at <= now_iso))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
    )
