#!/usr/bin/env python3
"""
SessionAuth -- operator command line.

Usage:
  python main.py create-user --email test@example.com --password password123
  python main.py create-user --email test@example.com      (prompts for password)
  python main.py purge

Commands:
  create-user   Seed an account directly in the store (no session is issued).
  purge         Delete expired sessions and password reset tokens. Safe to run
                from cron; request handling never depends on it.

Configuration comes from the same environment / .env as the server
(DATABASE_URL, SECRET_KEY, DEBUG, ...).
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import OperationalFailure, User
from auth.reset import PasswordResetFlow
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import hash_password, password_policy_error
from core.config import get_settings


def _open_store() -> AuthStore:
    settings = get_settings()
    return AuthStore(settings.database_url, timeout=settings.store_timeout_seconds)


def create_user(store: AuthStore, email: str, password: str) -> int:
    """Create an account and return the process exit code."""
    if error := password_policy_error(password):
        print(f"  [!] {error}")
        return 2
    try:
        user_id = store.create_user(User(email=email, password_hash=hash_password(password)))
    except IntegrityError:
        print(f"  [!] {email} is already registered.")
        return 1
    print(f"  Created user {email} (id={user_id}).")
    return 0


def purge(store: AuthStore) -> int:
    """Reap expired rows and return the process exit code."""
    settings = get_settings()
    sessions = SessionManager(store, ttl_seconds=settings.session_ttl_seconds)
    reset_flow = PasswordResetFlow(
        store,
        ttl_seconds=settings.reset_token_ttl_seconds,
        reset_url_base=settings.reset_url_base,
    )
    session_count = sessions.purge_expired()
    token_count = reset_flow.purge_expired()
    print(f"  Purged {session_count} expired session(s) and {token_count} expired reset token(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sessionauth",
        description="Operator tasks for the SessionAuth credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --email test@example.com --password password123
  python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command")

    create = sub.add_parser("create-user", help="Create an account")
    create.add_argument("--email", required=True, help="Account email (stored lower-cased)")
    create.add_argument(
        "--password",
        default=None,
        help="Account password. Omit to be prompted without echo.",
    )

    sub.add_parser("purge", help="Delete expired sessions and reset tokens")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    try:
        store = _open_store()
    except OperationalFailure as exc:
        print(f"  [!] Could not open the store: {exc}")
        return 1

    try:
        if args.command == "create-user":
            password = args.password if args.password is not None else getpass.getpass("Password: ")
            return create_user(store, args.email, password)
        return purge(store)
    except OperationalFailure as exc:
        print(f"  [!] Store unavailable: {exc}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
