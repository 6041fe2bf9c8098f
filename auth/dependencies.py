"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two auth methods are checked in priority order:
  1. JWT cookie ("access_token") -- set by the web UI login flow.
  2. Authorization: Bearer <token> header -- API clients using JWTs.

Both converge on a Principal loaded through the principal-type registry on
app.state, so a token issued for a "staff" principal loads from the staff
table, not the default one.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_principal() and raises HTTP 403 if not admin.

Layer rule: no imports from web/, ledger/, or security/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Principal
from auth.registry import PrincipalRegistry
from auth.tokens import decode_access_token
from core.config import ConfigurationError


def try_get_current_principal(request: Request) -> Principal | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated Principal on success, None on any failure.
    Never raises for bad credentials -- callers that need a hard 401 should
    use get_current_principal().

    The result is memoised on request.state so the enforcement gate and the
    route handler share one lookup per request.
    """
    if hasattr(request.state, "principal"):
        return request.state.principal

    registry: PrincipalRegistry = request.app.state.registry
    principal: Principal | None = None

    # 1. Cookie (web UI)
    token: str | None = request.cookies.get("access_token")

    # 2. Authorization: Bearer header (API clients)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if token:
        payload = decode_access_token(token)
        if payload:
            try:
                store = registry.get(payload["principal_type"])
            except ConfigurationError:
                # Token minted for a principal type that is no longer configured
                store = None
            if store is not None:
                found = store.get_by_id(payload["principal_id"])
                if found and found.is_active:
                    principal = found

    request.state.principal = principal
    return principal


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def require_admin(request: Request) -> Principal:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    principal = get_current_principal(request)
    if principal.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal
