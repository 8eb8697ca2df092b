"""
api/routes/v1/auth.py -- Account, credential and OAuth REST endpoints.

Routes:
  POST   /api/v1/auth/signup                   -- password sign-up; returns token pair, sets cookie
  POST   /api/v1/auth/login                    -- password login; returns token pair, sets cookie
  POST   /api/v1/auth/logout                   -- clears cookie; ends the session when a refresh token is sent
  POST   /api/v1/auth/refresh                  -- exchange a refresh token for a new pair
  GET    /api/v1/auth/me                       -- current user (valid credential, verified or not)
  POST   /api/v1/auth/verify-email/request     -- issue an email verification token
  POST   /api/v1/auth/verify-email             -- consume an email verification token
  POST   /api/v1/auth/password-reset/request   -- issue a password reset token
  POST   /api/v1/auth/password-reset           -- consume it and set a new password
  POST   /api/v1/auth/onboarding               -- complete the profile (verified users)
  GET    /api/v1/auth/providers                -- enabled OAuth providers (public)
  GET    /api/v1/auth/oauth/{provider}         -- redirect to the provider
  GET    /api/v1/auth/callback/{provider}      -- provider callback; link, start session, redirect
  DELETE /api/v1/auth/accounts/{provider}      -- unlink an OAuth provider

Security:
  [H2] login, signup and password-reset requests are rate-limited per IP.
  [C1] AuthService.sign_in() provides timing equalization -- use it, never inline.
  [C2] The post-login redirect target is validated to be a relative path.
  [M5] Cache-Control: no-store on every response that carries credentials.
  Token request endpoints answer identically for known and unknown emails.
"""

from __future__ import annotations

import logging
from typing import Optional

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    EmailRequest,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    OnboardingRequest,
    PasswordResetRequest,
    RefreshRequest,
    SignUpRequest,
    TokenDeliveryResponse,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from auth.dependencies import get_authenticated_identity, get_current_identity
from auth.errors import AuthError, NotFoundError, Rejection
from auth.identity import Identity
from auth.linking import OAuthLinkingEngine
from auth.models import User
from auth.oauth import get_enabled_providers, get_oauth_profile
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import CredentialCodec, TokenPair, set_auth_cookie

logger = logging.getLogger("clientportal.api.auth")

# Auth policy:
# - signup, login, logout, refresh, providers, token requests/consumption: public
# - oauth redirect and callback: public (authlib checks the state parameter)
# - GET /me, DELETE /accounts/{provider}: valid credential (unverified allowed)
# - POST /onboarding: valid credential and verified email
router = APIRouter()

_OAUTH_NEXT_KEY = "oauth_next"


def _safe_next(next_url: Optional[str]) -> Optional[str]:
    """Accept only server-local relative paths as a post-login redirect target. [C2]

    Rejects absolute URLs and protocol-relative ones ("//attacker.com").
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return None


def _with_credentials(request: Request, response: Response, tokens: TokenPair) -> Response:
    """Set the access token cookie and the no-store header on a credential-carrying response."""
    settings = request.app.state.settings
    set_auth_cookie(
        response,
        tokens.access_token,
        max_age=tokens.expires_in,
        secure=settings.secure_cookies,
        cookie_name=settings.auth_cookie_name,
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


def _token_response(request: Request, user: User, tokens: TokenPair, status_code: int = 200) -> JSONResponse:
    body = TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=tokens.expires_in,
        user=UserResponse.from_user(user),
    )
    return _with_credentials(request, JSONResponse(status_code=status_code, content=body.model_dump()), tokens)


# ---------------------------------------------------------------------------
# Password credentials
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/signup", response_model=TokenResponse, status_code=201)
def signup(request: Request, body: SignUpRequest) -> JSONResponse:
    """Create a password account and sign it in.

    The account starts unverified; verified-only endpoints answer 403
    email_unverified until POST /auth/verify-email succeeds.
    """
    service: AuthService = request.app.state.auth_service
    result = service.sign_up(body.email, body.password, name=body.name, phone_number=body.phone_number)
    return _token_response(request, result.user, result.tokens, status_code=201)


@limiter.limit(login_rate_limit)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same 401 so the response
    cannot be used to discover which addresses have accounts [C1].
    """
    service: AuthService = request.app.state.auth_service
    result = service.sign_in(body.email, body.password)
    return _token_response(request, result.user, result.tokens)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[LogoutRequest] = None) -> JSONResponse:
    """Clear the auth cookie. With a refresh token, also delete its session row.

    An invalid or already-used refresh token is ignored: logging out must
    always succeed from the client's point of view.
    """
    if body is not None and body.refresh_token:
        codec: CredentialCodec = request.app.state.codec
        claims = codec.verify_refresh(body.refresh_token)
        if not isinstance(claims, Rejection):
            service: AuthService = request.app.state.auth_service
            service.sign_out(claims.token_id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    resp.delete_cookie(request.app.state.settings.auth_cookie_name)
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair and extend the session."""
    service: AuthService = request.app.state.auth_service
    result = service.refresh(body.refresh_token)
    return _token_response(request, result.user, result.tokens)


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, identity: Identity = Depends(get_authenticated_identity)) -> MeResponse:
    """Return the current user and their linked OAuth providers.

    Reachable before email verification so the client can show the
    "verify your email" state.
    """
    store: AuthStore = request.app.state.store
    user = store.get_user_by_id(identity.user_id)
    if user is None:
        raise NotFoundError("User not found.")
    providers = [a.provider for a in store.list_external_accounts(user.id)]
    return MeResponse(**UserResponse.from_user(user).model_dump(), linked_providers=providers)


@router.post("/auth/onboarding", response_model=UserResponse)
def complete_onboarding(
    request: Request,
    body: OnboardingRequest,
    identity: Identity = Depends(get_current_identity),
) -> UserResponse:
    service: AuthService = request.app.state.auth_service
    user = service.complete_onboarding(identity.user_id, name=body.name, phone_number=body.phone_number)
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Email verification and password reset
# ---------------------------------------------------------------------------


def _delivery_response(request: Request, token: Optional[str]) -> TokenDeliveryResponse:
    message = "If the address has an account, a message has been sent."
    if token is not None and request.app.state.settings.debug:
        return TokenDeliveryResponse(message=message, token=token)
    return TokenDeliveryResponse(message=message)


@router.post("/auth/verify-email/request", response_model=TokenDeliveryResponse, status_code=202)
def request_email_verification(request: Request, body: EmailRequest) -> TokenDeliveryResponse:
    service: AuthService = request.app.state.auth_service
    return _delivery_response(request, service.request_email_verification(body.email))


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    """Consume a verification token. The next access token issued reports emailVerified=true;
    the identity resolver sees the change immediately.
    """
    service: AuthService = request.app.state.auth_service
    service.verify_email(body.token)
    return MessageResponse(message="Email verified.")


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/password-reset/request", response_model=TokenDeliveryResponse, status_code=202)
def request_password_reset(request: Request, body: EmailRequest) -> TokenDeliveryResponse:
    service: AuthService = request.app.state.auth_service
    return _delivery_response(request, service.request_password_reset(body.email))


@router.post("/auth/password-reset", response_model=MessageResponse)
def reset_password(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Set a new password. Every existing session of the user is revoked."""
    service: AuthService = request.app.state.auth_service
    service.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password updated. Please sign in again.")


# ---------------------------------------------------------------------------
# OAuth
#
# Route registration order: /auth/oauth/{provider} and /auth/callback/{provider}
# are fixed two-segment paths, so they cannot collide with the routes above.
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no provider is configured.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


def _oauth_failed() -> RedirectResponse:
    return RedirectResponse("/login?error=oauth_failed", status_code=302)


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str) -> Response:
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a
    spoofed name cannot reach create_client(). A relative ?next= target is
    remembered in the session for the callback [C2].
    """
    enabled = {p["name"] for p in get_enabled_providers(request.app.state.settings)}
    if provider not in enabled:
        return _oauth_failed()

    next_url = _safe_next(request.query_params.get("next"))
    if next_url:
        request.session[_OAUTH_NEXT_KEY] = next_url
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> Response:
    """Handle the provider callback and sign the user in.

    Flow:
      1. Exchange the authorization code (authlib verifies the state parameter).
      2. Normalize the provider response into an OAuthProfile [H1].
      3. OAuthLinkingEngine.link(): reuse, link by email, or create the user.
      4. Set the auth cookie and redirect: admins to the admin landing path,
         users who have not finished onboarding to /onboarding, everyone
         else to ?next or /.
    """
    settings = request.app.state.settings
    enabled = {p["name"] for p in get_enabled_providers(settings)}
    if provider not in enabled:
        return _oauth_failed()

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _oauth_failed()

    engine: OAuthLinkingEngine = request.app.state.linking
    try:
        profile = await get_oauth_profile(client, provider, token)
        result = engine.link(provider, profile)
    except AuthError as exc:
        if exc.status_code >= 500:
            raise
        logger.warning("OAuth login rejected for %r: %s", provider, exc.message)
        return _oauth_failed()

    next_url = request.session.pop(_OAUTH_NEXT_KEY, None)
    if result.is_admin:
        target = settings.admin_landing_path
    elif not result.onboarding_completed:
        target = "/onboarding"
    else:
        target = _safe_next(next_url) or "/"
    return _with_credentials(request, RedirectResponse(target, status_code=302), result.tokens)


@router.delete("/auth/accounts/{provider}", status_code=204)
def unlink_provider(
    request: Request,
    provider: str,
    identity: Identity = Depends(get_authenticated_identity),
) -> Response:
    """Unlink an OAuth provider. 409 when it is the only way left to sign in."""
    engine: OAuthLinkingEngine = request.app.state.linking
    engine.unlink(identity.user_id, provider)
    return Response(status_code=204)
