"""
auth/oauth.py -- Authlib OAuth/OIDC provider registry and profile extraction.

The registry is built from an explicit Settings object (build_oauth_registry)
instead of at import time, so tests and alternative deployments can wire
providers with their own client credentials. Only providers with both client
ID and secret configured get registered.

Security notes:
  [H1] An email the provider reports as unverified is rejected with
       OAuthProfileError. The linking engine merges accounts by email, which
       is only sound when the provider vouches for the address.

  OAuth state parameter (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware between the authorization redirect and the callback.

Supported providers:
  google -- Authorization code flow; OIDC discovery; offline access for refresh tokens.
  github -- Authorization code flow; static endpoints.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth

from auth.errors import OAuthProfileError
from auth.linking import OAuthProfile

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("clientportal.auth.oauth")

_PROVIDER_LABELS = {"google": "Google", "github": "GitHub"}


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Return an authlib OAuth registry with every configured provider registered."""
    oauth = OAuth()

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
            authorize_params={"access_type": "offline"},
        )
        logger.info("Google OAuth provider registered")

    # GitHub -- static endpoints (no OIDC discovery document)
    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name", "label"}] for every provider with client credentials configured."""
    configured = {
        "google": bool(settings.google_client_id and settings.google_client_secret),
        "github": bool(settings.github_client_id and settings.github_client_secret),
    }
    return [{"name": name, "label": _PROVIDER_LABELS[name]} for name, ok in configured.items() if ok]


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Normalize a provider token response into an OAuthProfile.

    email is None when the provider returned no address at all; the linking
    engine rejects that. An address the provider marks unverified raises
    OAuthProfileError here [H1].

    Args:
        client:   The authlib OAuth client for this provider.
        provider: "google" or "github".
        token:    The token dict returned by authlib after code exchange.
    """
    if provider == "google":
        return _get_google_profile(token)
    if provider == "github":
        return await _get_github_profile(client, token)
    raise OAuthProfileError(f"Unknown OAuth provider: {provider!r}")


def _get_google_profile(token: dict) -> OAuthProfile:
    """Read the OIDC userinfo claims authlib parsed from the id_token."""
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("sub"):
        raise OAuthProfileError("google OAuth: no userinfo in token response")

    email = userinfo.get("email")
    if email and not userinfo.get("email_verified", False):
        raise OAuthProfileError("google OAuth: email is not verified")

    return OAuthProfile(
        provider_account_id=str(userinfo["sub"]),
        email=email,
        display_name=userinfo.get("name"),
        picture_url=userinfo.get("picture"),
        access_token=token.get("access_token"),
        refresh_token=token.get("refresh_token"),
        expires_in=token.get("expires_in"),
    )


async def _get_github_profile(client, token: dict) -> OAuthProfile:
    """GitHub needs two calls: GET /user for the stable id, GET /user/emails for the address.

    [H1] Only the primary email is considered, and only when verified=true.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary"):
            if not entry.get("verified"):
                raise OAuthProfileError("github OAuth: primary email is not verified")
            email = entry["email"]
            break

    return OAuthProfile(
        provider_account_id=str(profile["id"]),
        email=email,
        display_name=profile.get("name") or profile.get("login"),
        picture_url=profile.get("avatar_url"),
        access_token=token.get("access_token"),
        refresh_token=token.get("refresh_token"),
        expires_in=token.get("expires_in"),
    )
