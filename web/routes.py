"""
web/routes.py -- Jinja2 template routes for the SessionAuth web pages.

These routes serve server-rendered HTML forms on top of the same AuthGateway
and PasswordResetFlow the JSON API uses (shared via app.state). Page-level
redirects for anonymous / signed-in visitors are applied by the route_gate
middleware in api/main.py before any handler here runs.

Routes:
  GET  /                 -- home page (protected)
  GET  /login            -- login form (auth-only)
  POST /login            -- handle password login, redirect to ?next= or /
  GET  /signup           -- signup form (auth-only)
  POST /signup           -- create account, redirect to /
  POST /logout           -- revoke session, clear cookie, redirect /login
  GET  /forgot-password  -- reset request form (public)
  POST /forgot-password  -- issue reset link; same page for known/unknown email
  GET  /reset-password   -- new password form if ?token= is live (public)
  POST /reset-password   -- consume token, redirect /login?reset=success
  GET  /privacy, /terms  -- legal pages (public)
"""

import logging
import re
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, BackgroundTasks, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.dependencies import get_auth_context, get_gateway, try_get_current_user
from auth.models import INVALID_OR_EXPIRED_TOKEN, AuthError, AuthErrorCode
from auth.routing import safe_next
from auth.tokens import password_policy_error
from core.config import get_settings

logger = logging.getLogger("sessionauth.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_settings = get_settings()

# Whitelist mapping for ?error= and ?reset= query params on /login.
# The raw query param is NEVER passed to templates -- only the message from
# this dict is. Prevents reflected XSS via crafted query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "invalid_credentials": "Invalid email or password.",
}
_INFO_MESSAGES: dict[str, str] = {
    "success": "Your password has been reset. Please log in with your new password.",
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

RESET_SENT_MESSAGE = "If an account exists for that email, we've sent a password reset link."

_LEGAL_PAGES: dict[str, dict[str, str]] = {
    "privacy": {
        "heading": "Privacy Policy",
        "summary": "We store your email address and a one-way hash of your password. "
        "Session cookies are used only to keep you signed in.",
    },
    "terms": {
        "heading": "Terms of Service",
        "summary": "By creating an account you agree to keep your credentials confidential "
        "and to use the service lawfully.",
    },
}


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _new_password_error(password: str, confirm_password: str) -> Optional[str]:
    """Form-level checks shared by signup and reset. Mirrors api.models.NewPasswordMixin."""
    if password != confirm_password:
        return "Passwords don't match."
    return password_policy_error(password)


# ---------------------------------------------------------------------------
# GET / -- home
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    # route_gate has already redirected anonymous visitors.
    user = try_get_current_user(request)
    return templates.TemplateResponse(request, "home.html", {"user": user})


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page. ?error= and ?reset= are mapped through whitelists."""
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""))
    info_msg = _INFO_MESSAGES.get(request.query_params.get("reset", ""))
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "info_msg": info_msg,
            "next_url": safe_next(request.query_params.get("next")),
        },
    )


@router.post("/login")
def login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
) -> RedirectResponse:
    """Handle email/password login form submission."""
    next_url = safe_next(request.query_params.get("next"))
    ctx = get_auth_context(request)
    result = get_gateway(request).login(ctx, email, password)
    if isinstance(result, AuthError):
        target = "/login?error=invalid_credentials"
        if next_url != "/":
            target += f"&next={quote(next_url, safe='/')}"
        return _no_store(RedirectResponse(target, status_code=302))

    resp = RedirectResponse(next_url, status_code=302)
    ctx.apply(resp)
    return _no_store(resp)


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Revoke the current session, clear the cookie and redirect to the login page."""
    ctx = get_auth_context(request)
    get_gateway(request).logout(ctx)
    resp = RedirectResponse("/login", status_code=302)
    ctx.apply(resp)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


@router.get("/signup", response_class=HTMLResponse)
def signup_form(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "signup.html", {"min_length": _settings.password_min_length})


@router.post("/signup", response_class=HTMLResponse)
def signup_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
):
    """Create an account; on success the new session cookie is set and the user lands on /."""

    def _render_error(message: str, status_code: int) -> HTMLResponse:
        return templates.TemplateResponse(
            request,
            "signup.html",
            {"error_msg": message, "email": email, "min_length": _settings.password_min_length},
            status_code=status_code,
        )

    email = email.strip()
    if not _EMAIL_RE.match(email):
        return _render_error("Please enter a valid email address.", 400)
    if error := _new_password_error(password, confirm_password):
        return _render_error(error, 400)

    ctx = get_auth_context(request)
    result = get_gateway(request).signup(ctx, email, password)
    if isinstance(result, AuthError):
        status_code = 409 if result.code is AuthErrorCode.ALREADY_REGISTERED else 400
        return _render_error(result.message, status_code)

    resp = RedirectResponse("/", status_code=302)
    ctx.apply(resp)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.get("/forgot-password", response_class=HTMLResponse)
def forgot_password_form(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "forgot_password.html", {"sent": False})


@router.post("/forgot-password", response_class=HTMLResponse)
def forgot_password_post(
    request: Request, background_tasks: BackgroundTasks, email: str = Form(...)
) -> HTMLResponse:
    """Issue a reset link. The confirmation page is identical for known and unknown emails.

    The lookup and delivery run after the page is sent, so response time is
    identical too.
    """
    email = email.strip()
    if not _EMAIL_RE.match(email):
        return templates.TemplateResponse(
            request,
            "forgot_password.html",
            {"sent": False, "email": email, "error_msg": "Please enter a valid email address."},
            status_code=400,
        )
    background_tasks.add_task(request.app.state.reset_flow.request_reset_in_background, email)
    return templates.TemplateResponse(
        request,
        "forgot_password.html",
        {"sent": True, "sent_msg": RESET_SENT_MESSAGE},
    )


@router.get("/reset-password", response_class=HTMLResponse)
def reset_password_form(request: Request, token: Optional[str] = None):
    """Show the new-password form only when ?token= is live. Does not consume the token."""
    if not token:
        return RedirectResponse("/forgot-password", status_code=302)
    flow = request.app.state.reset_flow
    if not flow.validate_token(token):
        return _no_store(
            templates.TemplateResponse(
                request,
                "reset_invalid.html",
                {"error_msg": INVALID_OR_EXPIRED_TOKEN.message},
                status_code=400,
            )
        )
    return _no_store(
        templates.TemplateResponse(
            request,
            "reset_password.html",
            {"token": token, "min_length": _settings.password_min_length},
        )
    )


@router.post("/reset-password", response_class=HTMLResponse)
def reset_password_post(
    request: Request,
    token: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
):
    """Consume the token and set the new password.

    The token is re-validated inside the consuming transaction; whatever the
    GET handler saw earlier is not trusted.
    """
    if error := _new_password_error(password, confirm_password):
        return _no_store(
            templates.TemplateResponse(
                request,
                "reset_password.html",
                {"token": token, "error_msg": error, "min_length": _settings.password_min_length},
                status_code=400,
            )
        )

    result = request.app.state.reset_flow.consume_reset(token, password)
    if isinstance(result, AuthError) and result.code is AuthErrorCode.INVALID_PASSWORD:
        return _no_store(
            templates.TemplateResponse(
                request,
                "reset_password.html",
                {"token": token, "error_msg": result.message, "min_length": _settings.password_min_length},
                status_code=400,
            )
        )
    if isinstance(result, AuthError):
        return _no_store(
            templates.TemplateResponse(
                request,
                "reset_invalid.html",
                {"error_msg": result.message},
                status_code=400,
            )
        )

    # Every session of the account was revoked; drop this browser's cookie too.
    ctx = get_auth_context(request)
    ctx.clear_cookie = True
    resp = RedirectResponse("/login?reset=success", status_code=302)
    ctx.apply(resp)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Legal pages
# ---------------------------------------------------------------------------


@router.get("/privacy", response_class=HTMLResponse)
def privacy(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "legal.html", _LEGAL_PAGES["privacy"])


@router.get("/terms", response_class=HTMLResponse)
def terms(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "legal.html", _LEGAL_PAGES["terms"])
