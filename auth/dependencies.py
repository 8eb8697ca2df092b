"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Two credential kinds converge here:
  1. Bearer credential (JWT) -- "Authorization: Bearer <token>" header, else the
     auth cookie ("auth_token"). The header wins when both are sent.
  2. X-API-Key header -- machine clients holding an organization API key.

Bearer credentials go through IdentityResolver and RouteGuard; the guard's
decision is mapped to HTTP here and nowhere else:
  UNAUTHENTICATED -> 401 unauthenticated (detail carries the rejection reason)
  UNVERIFIED      -> 403 email_unverified (detail carries the verify-email path)
  FORBIDDEN       -> 403 forbidden
  REDIRECT        -> 303 to the admin landing path

The components live on app.state (wired by api/main.py) so tests can swap
stores and secrets without touching module globals.

Layer rule: auth/dependencies.py is the only auth module that imports fastapi.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.api_keys import API_SCOPES, ApiKeyManager, ValidatedApiKey
from auth.errors import InvalidApiKeyError, Rejection
from auth.guard import GuardOutcome, RouteGuard, Surface
from auth.identity import Identity, IdentityResolver, extract_credential


def resolve_request(request: Request) -> Identity | Rejection:
    """Extract the bearer credential from the request and resolve it. Never raises for bad credentials."""
    cookie_name = request.app.state.settings.auth_cookie_name
    token = extract_credential(request.headers.get("Authorization"), request.cookies.get(cookie_name))
    resolver: IdentityResolver = request.app.state.resolver
    return resolver.resolve(token)


def try_get_current_identity(request: Request) -> Identity | None:
    """Soft variant: the Identity, or None for any credential problem."""
    resolved = resolve_request(request)
    return None if isinstance(resolved, Rejection) else resolved


def _unauthenticated(reason: Rejection | None) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={
            "code": "unauthenticated",
            "message": "Authentication required.",
            "detail": reason.value if reason else None,
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


def _enforce(request: Request, surface: Surface) -> Identity:
    guard: RouteGuard = request.app.state.guard
    decision = guard.evaluate(resolve_request(request), surface)
    if decision.outcome is GuardOutcome.ALLOW:
        return decision.identity
    if decision.outcome is GuardOutcome.UNAUTHENTICATED:
        raise _unauthenticated(decision.reason)
    if decision.outcome is GuardOutcome.UNVERIFIED:
        raise HTTPException(
            status_code=403,
            detail={
                "code": "email_unverified",
                "message": "Verify your email address to continue.",
                "detail": decision.redirect_to,
            },
        )
    if decision.outcome is GuardOutcome.FORBIDDEN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    raise HTTPException(
        status_code=303,
        detail={"code": "redirect", "message": "Use the admin area.", "detail": decision.redirect_to},
        headers={"Location": decision.redirect_to},
    )


def get_authenticated_identity(request: Request) -> Identity:
    """Require a valid credential only. For endpoints an unverified user must still reach
    (profile, resend verification email).
    """
    resolved = resolve_request(request)
    if isinstance(resolved, Rejection):
        raise _unauthenticated(resolved)
    return resolved


def get_current_identity(request: Request) -> Identity:
    """Require a valid credential and a verified email.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_current_identity)): ...
    """
    return _enforce(request, Surface.ANY)


def require_client(request: Request) -> Identity:
    """Client self-service surface. Administrators are redirected to the admin area."""
    return _enforce(request, Surface.CLIENT)


def require_admin(request: Request) -> Identity:
    """Internal admin surface. 401 unauthenticated, 403 unverified or not admin."""
    return _enforce(request, Surface.ADMIN)


def get_api_key(request: Request) -> ValidatedApiKey:
    """Require a usable X-API-Key, whatever its scopes. 401 invalid_api_key otherwise."""
    manager: ApiKeyManager = request.app.state.api_keys
    validated = manager.validate(request.headers.get("X-API-Key", ""))
    if validated is None:
        raise InvalidApiKeyError()
    return validated


def require_api_scope(scope: str) -> Callable[[Request], ValidatedApiKey]:
    """Build a dependency that authorizes the X-API-Key header for scope.

        @router.post("/pos/transactions")
        async def route(key: ValidatedApiKey = Depends(require_api_scope("pos:write"))): ...

    InvalidApiKeyError (401) and InsufficientScopeError (403) propagate to the
    app's AuthError handler. An unknown scope name fails at import time, not per request.
    """
    if scope not in API_SCOPES:
        raise ValueError(f"Unknown API scope: {scope!r}")

    def dependency(request: Request) -> ValidatedApiKey:
        manager: ApiKeyManager = request.app.state.api_keys
        return manager.authorize(request.headers.get("X-API-Key", ""), scope)

    return dependency
