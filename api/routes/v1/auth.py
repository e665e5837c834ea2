"""
api/routes/v1/auth.py -- Authentication and password reset REST endpoints.

Routes:
  POST /api/v1/auth/signup                   -- create account; sets session cookie
  POST /api/v1/auth/login                    -- password login; sets session cookie
  POST /api/v1/auth/logout                   -- revoke session, clear cookie; 200
  POST /api/v1/auth/logout-all               -- revoke every session of the user (requires auth)
  GET  /api/v1/auth/me                       -- current user identity (requires auth)
  POST /api/v1/auth/password-reset           -- request reset link; always 202
  GET  /api/v1/auth/password-reset/validate  -- is ?token= live? (does not consume)
  POST /api/v1/auth/password-reset/confirm   -- consume token, set new password

Security:
  Login returns one generic error ("invalid_credentials") for unknown email and
      wrong password. AuthGateway.login() also equalizes timing -- use it, never
      inline get_by_email() + verify_password().
  Password reset requests return the same 202 body whether or not the email is
      registered.
  Cache-Control: no-store on every response that carries or clears a credential.

Handlers are plain `def` so FastAPI runs them in its thread pool: bcrypt and
the SQLAlchemy calls underneath are blocking.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import (
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    SessionResponse,
    SignupRequest,
    TokenValidityResponse,
)
from auth.dependencies import get_auth_context, get_current_user, get_gateway
from auth.gateway import AuthContext
from auth.models import AuthError, AuthErrorCode, UserIdentity

# Auth policy:
# - POST /api/v1/auth/signup:                  public
# - POST /api/v1/auth/login:                   public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:                  public -- revoking a missing session is a no-op
# - POST /api/v1/auth/logout-all:              requires auth
# - GET  /api/v1/auth/me:                      requires auth (get_current_user)
# - POST /api/v1/auth/password-reset*:         public -- the user cannot log in, by definition
router = APIRouter()

_ERROR_STATUS: dict[AuthErrorCode, int] = {
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.UNAUTHENTICATED: 401,
    AuthErrorCode.ALREADY_REGISTERED: 409,
    AuthErrorCode.INVALID_OR_EXPIRED_TOKEN: 400,
    AuthErrorCode.INVALID_PASSWORD: 422,
}

RESET_REQUESTED_MESSAGE = "If an account exists for that email, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_response(error: AuthError) -> JSONResponse:
    resp = JSONResponse(
        status_code=_ERROR_STATUS[error.code],
        content=ErrorResponse(error=ErrorDetail(code=error.code.value, message=error.message)).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _credential_response(status_code: int, content: dict, ctx: AuthContext) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    ctx.apply(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Signup / login / logout
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=SessionResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create an account and log it in. 409 if the email is already registered."""
    ctx = get_auth_context(request)
    result = get_gateway(request).signup(ctx, body.email, body.password)
    if isinstance(result, AuthError):
        return _error_response(result)
    return _credential_response(201, SessionResponse.from_issued(result).model_dump(), ctx)


@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Returns the same generic error for unknown email and wrong password
    ("invalid_credentials") to avoid leaking which emails are registered.
    """
    ctx = get_auth_context(request)
    result = get_gateway(request).login(ctx, body.email, body.password)
    if isinstance(result, AuthError):
        return _error_response(result)
    return _credential_response(200, SessionResponse.from_issued(result).model_dump(), ctx)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the presented session and clear the cookie. Idempotent."""
    ctx = get_auth_context(request)
    get_gateway(request).logout(ctx)
    return _credential_response(200, MessageResponse(message="Logged out.").model_dump(), ctx)


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request) -> JSONResponse:
    """Revoke every session of the current user, on every device."""
    ctx = get_auth_context(request)
    result = get_gateway(request).logout_everywhere(ctx)
    if isinstance(result, AuthError):
        return _error_response(result)
    content = LogoutAllResponse(message="Logged out everywhere.", sessions_revoked=result).model_dump()
    return _credential_response(200, content, ctx)


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: UserIdentity = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(user_id=current_user.id, email=current_user.email)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset", response_model=MessageResponse, status_code=202)
def request_password_reset(
    request: Request, body: PasswordResetRequest, background_tasks: BackgroundTasks
) -> MessageResponse:
    """Issue a reset link for the email if it is registered.

    Always 202 with the same body: the response never reveals whether the
    email belongs to an account. The lookup and delivery run after the
    response is sent, so its timing does not reveal it either.
    """
    background_tasks.add_task(request.app.state.reset_flow.request_reset_in_background, body.email)
    return MessageResponse(message=RESET_REQUESTED_MESSAGE)


@router.get("/auth/password-reset/validate", response_model=TokenValidityResponse)
def validate_password_reset(request: Request, token: str = Query(min_length=1, max_length=128)) -> TokenValidityResponse:
    """Report whether a reset token is live. Used to decide whether to show the reset form."""
    return TokenValidityResponse(valid=request.app.state.reset_flow.validate_token(token))


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> JSONResponse:
    """Consume a reset token and set the new password.

    Every session of the account is revoked, so the caller's cookie (if any)
    is cleared as well; the user logs in again with the new password.
    """
    ctx = get_auth_context(request)
    result = request.app.state.reset_flow.consume_reset(body.token, body.password)
    if isinstance(result, AuthError):
        return _error_response(result)
    ctx.clear_cookie = True
    content = MessageResponse(message="Password has been reset. Please log in.").model_dump()
    return _credential_response(200, content, ctx)
