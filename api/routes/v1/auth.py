"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login     -- password login; sets JWT cookie    (name: api.login)
  POST /api/v1/auth/logout    -- clears cookie; 200                 (name: api.logout)
  GET  /api/v1/auth/me        -- current principal (requires auth, gated)
  POST /api/v1/auth/password  -- change own password                (name: api.password.change)

login, logout and password change are exempt from the enforcement gate by
default: a principal with an expired password must still be able to log in
and replace it.

Security:
  POST /login is rate-limited per IP (Settings.login_rate_limit).
  authenticate_principal() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, limiter
from api.models import LoginRequest, LoginResponse, PasswordChangeRequest, PrincipalResponse
from auth.dependencies import get_current_principal
from auth.models import Principal
from auth.registry import PrincipalRegistry
from auth.tokens import (
    authenticate_principal,
    create_access_token,
    hash_password,
    set_auth_cookie,
    verify_password,
)
from core.config import ConfigurationError, get_settings
from ledger.models import Trigger
from security.service import CredentialSecurityService

logger = logging.getLogger("credguard.api")

# Auth policy:
# - POST /api/v1/auth/login:     public
# - POST /api/v1/auth/logout:    public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:        requires auth (get_current_principal)
# - POST /api/v1/auth/password:  requires auth (get_current_principal)
router = APIRouter()


@limiter.limit(LOGIN_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse, name="api.login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Returns the same generic error for an unknown email and a wrong password
    ("bad_credentials") to avoid leaking account existence.
    """
    registry: PrincipalRegistry = request.app.state.registry
    try:
        store = registry.get(body.principal_type)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_principal_type", "message": str(exc)},
        ) from exc

    principal = authenticate_principal(store, body.email, body.password)
    if principal is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    token = create_access_token(principal)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=get_settings().token_expire_seconds,
            email=principal.email,
            principal_type=principal.principal_type,
            role=principal.role,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", name="api.logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=PrincipalResponse)
def me(current: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    """Return identity information for the authenticated principal."""
    return PrincipalResponse.from_principal(current)


@router.post("/auth/password", name="api.password.change")
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    current: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Replace the caller's password and record the change in the audit ledger."""
    if current.hashed_password is None or not verify_password(body.current_password, current.hashed_password):
        raise HTTPException(
            status_code=400,
            detail={"code": "bad_credentials", "message": "Current password is incorrect."},
        )
    if body.new_password == body.current_password:
        raise HTTPException(
            status_code=400,
            detail={"code": "password_unchanged", "message": "New password must differ from the current one."},
        )
    service: CredentialSecurityService = request.app.state.service
    service.complete_password_reset(current, hash_password(body.new_password), triggered_by=Trigger.user())
    logger.info("Password changed by %s#%s", current.principal_type, current.id)
    return JSONResponse(content={"message": "Password changed."})
