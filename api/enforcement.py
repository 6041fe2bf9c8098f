"""
api/enforcement.py -- HTTP adapter for the credential enforcement gate.

Three pieces:
  enforce_credential_policy()  -- app-level dependency (FastAPI(dependencies=[...]))
                                  that runs the gate for every APIRoute, web
                                  routes included once asgi.py mounts them.
  verification_required_response()
                               -- renders VerificationRequired: 403 JSON for
                                  machine callers, 302 + session flash for browsers.
  validate_route_names()       -- startup check that the redirect route and every
                                  exempt route name are real routes.

Routes are identified by name, never by path, so moving a URL does not
silently drop it out of the exempt set.

Layer rule: no imports from web/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Match

from api.models import ErrorDetail, ErrorResponse
from auth.dependencies import try_get_current_principal
from core.config import ConfigurationError
from security.gate import EnforcementGate, VerificationRequired
from security.policy import PolicyConfig

logger = logging.getLogger("credguard.api")

# Session key the notice page pops to render the gate's messages once.
FLASH_KEY = "verification_messages"


def matched_route_name(request: Request) -> str | None:
    """Name of the route serving this request (None if it cannot be determined)."""
    route = request.scope.get("route")
    if route is not None:
        return getattr(route, "name", None)
    for candidate in request.app.router.routes:
        match, _ = candidate.matches(request.scope)
        if match is Match.FULL:
            return getattr(candidate, "name", None)
    return None


def enforce_credential_policy(request: Request) -> None:
    """Deny stale principals before the route handler runs.

    Unauthenticated requests pass through untouched; the route's own auth
    dependency decides what to do with them.
    """
    gate: EnforcementGate = request.app.state.gate
    principal = try_get_current_principal(request)
    gate.enforce(principal, matched_route_name(request))


def wants_json(request: Request) -> bool:
    """True for API paths and clients that ask for JSON."""
    return request.url.path.startswith("/api/") or "application/json" in request.headers.get("accept", "")


def verification_required_response(request: Request, exc: VerificationRequired) -> Response:
    if wants_json(request):
        return JSONResponse(
            status_code=403,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="verification_required",
                    message="Verification required.",
                    messages=exc.messages,
                )
            ).model_dump(exclude_none=True),
        )
    request.session[FLASH_KEY] = exc.messages
    redirect_route = request.app.state.gate.config.redirect_route
    return RedirectResponse(str(request.url_for(redirect_route)), status_code=302)


def _route_names(routes) -> Iterator[str]:
    """Yield every route name, descending into included routers and mounts.

    Newer FastAPI releases keep an included router as one nameless entry whose
    routes live on original_router; Starlette mounts expose them as .routes.
    """
    for route in routes:
        name = getattr(route, "name", None)
        if name:
            yield name
        nested = getattr(route, "original_router", None)
        children = nested.routes if nested is not None else getattr(route, "routes", None)
        if children:
            yield from _route_names(children)


def validate_route_names(app: FastAPI, config: PolicyConfig) -> None:
    """Raise ConfigurationError if a configured route name does not exist in app."""
    known = set(_route_names(app.routes))
    wanted = {config.redirect_route, *config.exempt_routes}
    missing = sorted(name for name in wanted if name not in known)
    if missing:
        raise ConfigurationError(f"Configured route names not found in the application: {missing!r}.")
    logger.info("Enforcement gate covers all routes except %d exempt route(s)", len(config.exempt_routes))
