"""
auth/routing.py -- Page classification and redirect rules for the route gate.

Every page path falls in exactly one class:

  PUBLIC     -- reachable with or without a session: the password reset flow
                (/forgot-password, /reset-password) and legal pages
                (/privacy, /terms), and /logout, which is a no-op without a
                session and must never become a ?next= target (it is
                POST-only). Also everything the gate does not look at
                (/api/..., /static/..., file-like paths such as /favicon.ico).
  AUTH_ONLY  -- the login and signup pages. A signed-in user is sent home.
  PROTECTED  -- everything else. An anonymous user is sent to /login.

Matching is per path segment: "/login" and "/login/x" are AUTH_ONLY,
"/loginx" is not.

The functions here are pure so they can be tested without a server; the
middleware in api/main.py supplies the "is this request authenticated" bit.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from enum import Enum
from urllib.parse import quote

LOGIN_PATH = "/login"
HOME_PATH = "/"

_AUTH_ONLY_PATHS = ("/login", "/signup")
_PUBLIC_PATHS = ("/logout", "/forgot-password", "/reset-password", "/privacy", "/terms")
_UNGATED_PREFIXES = ("/api/", "/static/")


class RouteAccess(str, Enum):
    PUBLIC = "public"
    AUTH_ONLY = "auth_only"
    PROTECTED = "protected"


def _matches(path: str, base: str) -> bool:
    return path == base or path.startswith(base + "/")


def is_gated(path: str) -> bool:
    """False for API, static assets and file-like paths, which the gate ignores."""
    if path.startswith(_UNGATED_PREFIXES) or path == "/api":
        return False
    last_segment = path.rsplit("/", 1)[-1]
    return "." not in last_segment


def classify_path(path: str) -> RouteAccess:
    if not is_gated(path):
        return RouteAccess.PUBLIC
    if any(_matches(path, p) for p in _AUTH_ONLY_PATHS):
        return RouteAccess.AUTH_ONLY
    if any(_matches(path, p) for p in _PUBLIC_PATHS):
        return RouteAccess.PUBLIC
    return RouteAccess.PROTECTED


def login_redirect_target(path: str) -> str:
    """/login, carrying the original page as ?next= so login can return there."""
    if path == HOME_PATH:
        return LOGIN_PATH
    return f"{LOGIN_PATH}?next={quote(path, safe='/')}"


def gate_redirect(path: str, authenticated: bool) -> str | None:
    """Return the redirect Location for this request, or None to let it through."""
    access = classify_path(path)
    if access is RouteAccess.PROTECTED and not authenticated:
        return login_redirect_target(path)
    if access is RouteAccess.AUTH_ONLY and authenticated:
        return HOME_PATH
    return None


def safe_next(next_url: str | None) -> str:
    """Validate a post-login redirect target. Only accept local paths.

    Rejects absolute URLs ("https://attacker.com"), protocol-relative URLs
    ("//attacker.com") and backslash tricks ("/\\attacker.com") that some
    browsers normalise to protocol-relative.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return HOME_PATH
