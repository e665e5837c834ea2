"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The bearer token is read from the session cookie first, then from an
Authorization: Bearer header. Both converge on the same AuthGateway check.

get_auth_context() builds the per-request AuthContext once and caches it on
request.state, so the route gate middleware and the route handler share it.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated -- the
one place the "Unauthenticated" outcome becomes an exception, because that is
how FastAPI dependencies abort a request.

Layer rule: no imports from web/ or api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.gateway import AuthContext, AuthGateway
from auth.models import AuthError, UserIdentity

_UNRESOLVED = object()


def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


def get_auth_context(request: Request) -> AuthContext:
    """Return this request's AuthContext, creating it from cookies/headers on first use."""
    ctx = getattr(request.state, "auth_context", None)
    if ctx is None:
        ctx = AuthContext.from_request(request)
        request.state.auth_context = ctx
    return ctx


def try_get_current_user(request: Request) -> UserIdentity | None:
    """Resolve the request's bearer token to an identity. Never raises for bad tokens.

    The result is cached on request.state so a request costs at most one
    session lookup however many times this is called.
    """
    cached = getattr(request.state, "auth_identity", _UNRESOLVED)
    if cached is not _UNRESOLVED:
        return cached
    identity = get_gateway(request).current_user(get_auth_context(request))
    request.state.auth_identity = identity
    return identity


def get_current_user(request: Request) -> UserIdentity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: UserIdentity = Depends(get_current_user)): ...
    """
    result = get_gateway(request).require_user(get_auth_context(request))
    if isinstance(result, AuthError):
        raise HTTPException(
            status_code=401,
            detail={"code": result.code.value, "message": result.message},
        )
    request.state.auth_identity = result
    return result
