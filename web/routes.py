"""
web/routes.py -- Jinja2 template routes for the CredGuard web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same registry, ledger, service) but return HTML instead of JSON.

Every route here carries an explicit name. The enforcement gate and
EXEMPT_ROUTES refer to routes by name, so renaming one is a config change.

Routes:
  GET  /                                    -- redirect to /account
  GET  /account                             -- account page (auth required, gated)      account
  GET  /email/verify                        -- verification notice + gate messages      verification.notice
  GET  /email/verify/{token}                -- verification link target                 verification.verify
  POST /email/verification-notification     -- resend verification link                 verification.send
  GET  /forgot-password                     -- reset request form                       password.request
  POST /forgot-password                     -- send reset link                          password.email
  GET  /reset-password/{token}              -- new password form                        password.reset
  POST /reset-password                      -- store new password                       password.update
  GET  /login                               -- login form                               login.form
  POST /login                               -- handle password login                    login
  POST /logout                              -- clear cookie, redirect /login            logout
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.dependencies import try_get_current_principal
from auth.registry import PrincipalRegistry
from auth.tokens import (
    authenticate_principal,
    create_access_token,
    decode_password_reset_token,
    decode_verification_token,
    hash_password,
    reset_token_matches,
    set_auth_cookie,
    verification_token_matches,
)
from core.config import ConfigurationError
from ledger.models import Trigger
from security.resolver import Many
from security.service import CredentialSecurityService

logger = logging.getLogger("credguard.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# layout.html calls this to decide which nav links to render.
templates.env.globals["try_get_current_principal"] = try_get_current_principal
router = APIRouter()

# Session keys. FLASH_KEY must match api.enforcement.FLASH_KEY; web/ does not
# import api/, so the string is repeated here.
FLASH_KEY = "verification_messages"
STATUS_KEY = "status_message"

_MIN_PASSWORD_LENGTH = 8

# Whitelist mapping for ?error= / ?status= query params on /login.
# The raw query param is NEVER passed to templates -- only the message from
# these dicts is. Prevents reflected XSS via crafted query strings.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email or password.",
}
_STATUS_MESSAGES: dict[str, str] = {
    "password_reset": "Your password has been reset. Please log in.",
    "logged_out": "You have been logged out.",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative URLs ("//host") so the login
    form cannot be used as an open redirect.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/account"


def _require_auth(request: Request) -> Optional[RedirectResponse]:
    """Return a RedirectResponse to /login if not authenticated, None if OK.

        if redirect := _require_auth(request):
            return redirect
    """
    if try_get_current_principal(request) is None:
        return RedirectResponse(f"/login?next={request.url.path}", status_code=302)
    return None


def _load_from_token(request: Request, payload: dict):
    """Load the principal a signed link was issued for (None if it no longer exists)."""
    registry: PrincipalRegistry = request.app.state.registry
    try:
        store = registry.get(payload["principal_type"])
    except ConfigurationError:
        return None
    principal = store.get_by_id(payload["principal_id"])
    if principal is None or principal.email != payload.get("sub"):
        return None
    return principal


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


@router.get("/", name="home")
def home() -> RedirectResponse:
    return RedirectResponse("/account", status_code=302)


@router.get("/account", response_class=HTMLResponse, name="account")
def account(request: Request) -> HTMLResponse:
    if redirect := _require_auth(request):
        return redirect
    principal = try_get_current_principal(request)
    service: CredentialSecurityService = request.app.state.service
    records = service.ledger.list_for(principal, recent_days=90)
    return templates.TemplateResponse(
        request,
        "account.html",
        {"principal": principal, "records": records},
    )


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.get("/email/verify", response_class=HTMLResponse, name="verification.notice")
def verification_notice(request: Request) -> HTMLResponse:
    """Show why the principal was stopped. Flash messages render exactly once."""
    messages = request.session.pop(FLASH_KEY, [])
    status_message = request.session.pop(STATUS_KEY, None)
    return templates.TemplateResponse(
        request,
        "verify_notice.html",
        {
            "messages": messages,
            "status_message": status_message,
            "principal": try_get_current_principal(request),
        },
    )


@router.get("/email/verify/{token}", response_class=HTMLResponse, name="verification.verify")
def verify_email(request: Request, token: str) -> HTMLResponse:
    payload = decode_verification_token(token)
    principal = _load_from_token(request, payload) if payload else None
    if principal is None or not verification_token_matches(payload, principal):
        return templates.TemplateResponse(
            request,
            "verify_notice.html",
            {
                "messages": ["This verification link is invalid or has expired."],
                "status_message": None,
                "principal": try_get_current_principal(request),
            },
            status_code=400,
        )
    service: CredentialSecurityService = request.app.state.service
    service.mark_verified(principal, triggered_by=Trigger.user())
    logger.info("Email verified for %s#%s", principal.principal_type, principal.id)
    request.session[STATUS_KEY] = "Your email address has been verified."
    return RedirectResponse("/email/verify", status_code=302)


@router.post("/email/verification-notification", name="verification.send")
def resend_verification(request: Request) -> RedirectResponse:
    if redirect := _require_auth(request):
        return redirect
    principal = try_get_current_principal(request)
    request.app.state.notifier.send_verification_notification(principal)
    request.session[STATUS_KEY] = "A new verification link has been sent to your email address."
    return RedirectResponse("/email/verify", status_code=302)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.get("/forgot-password", response_class=HTMLResponse, name="password.request")
def forgot_password_form(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "forgot_password.html", {"sent": False})


@router.post("/forgot-password", response_class=HTMLResponse, name="password.email")
def forgot_password(request: Request, email: str = Form(...)) -> HTMLResponse:
    """Send a reset link to every active principal with this email, whatever its type.

    The response is identical whether or not the email is known.
    """
    service: CredentialSecurityService = request.app.state.service
    registry: PrincipalRegistry = request.app.state.registry
    matches = [registry.get(key).get_by_email(email.strip()) for key in registry.keys()]
    active = [p for p in matches if p is not None and p.is_active]
    if active:
        service.request_password_change(
            Many(active),
            reason="Password reset requested",
            triggered_by=Trigger.user(),
        )
    return templates.TemplateResponse(request, "forgot_password.html", {"sent": True})


@router.get("/reset-password/{token}", response_class=HTMLResponse, name="password.reset")
def reset_password_form(request: Request, token: str) -> HTMLResponse:
    return templates.TemplateResponse(request, "reset_password.html", {"token": token, "error_msg": None})


@router.post("/reset-password", response_class=HTMLResponse, name="password.update")
def reset_password(
    request: Request,
    token: str = Form(...),
    password: str = Form(...),
    password_confirmation: str = Form(...),
) -> HTMLResponse:
    def _fail(message: str) -> HTMLResponse:
        return templates.TemplateResponse(
            request,
            "reset_password.html",
            {"token": token, "error_msg": message},
            status_code=400,
        )

    payload = decode_password_reset_token(token)
    principal = _load_from_token(request, payload) if payload else None
    if principal is None or not reset_token_matches(payload, principal):
        return _fail("This password reset link is invalid or has already been used.")
    if password != password_confirmation:
        return _fail("Passwords do not match.")
    if len(password) < _MIN_PASSWORD_LENGTH:
        return _fail(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.")

    service: CredentialSecurityService = request.app.state.service
    service.complete_password_reset(principal, hash_password(password), triggered_by=Trigger.user())
    logger.info("Password reset completed for %s#%s", principal.principal_type, principal.id)
    resp = RedirectResponse("/login?status=password_reset", status_code=302)
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse, name="login.form")
def login_form(request: Request) -> HTMLResponse:
    if try_get_current_principal(request) is not None:
        return RedirectResponse("/account", status_code=302)
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": _ERROR_MESSAGES.get(request.query_params.get("error", "")),
            "status_msg": _STATUS_MESSAGES.get(request.query_params.get("status", "")),
            "next": _safe_next(request.query_params.get("next")),
        },
    )


@router.post("/login", response_class=HTMLResponse, name="login")
def login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    next: str = Form("/account"),
) -> RedirectResponse:
    """Handle the login form. A principal with stale credentials is still
    logged in; the gate stops them on the next protected page."""
    registry: PrincipalRegistry = request.app.state.registry
    principal = authenticate_principal(registry.get(), email.strip(), password)
    if principal is None:
        return RedirectResponse("/login?error=bad_credentials", status_code=302)

    resp = RedirectResponse(_safe_next(next), status_code=302)
    set_auth_cookie(resp, create_access_token(principal))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout", name="logout")
def logout(request: Request) -> RedirectResponse:
    """Clear the JWT cookie and redirect to the login page."""
    resp = RedirectResponse("/login?status=logged_out", status_code=302)
    resp.delete_cookie("access_token")
    return resp
