"""
auth/identity.py -- Turn a raw bearer credential into an authoritative Identity.

Claims inside a token are a snapshot taken at issue time. They may be stale
relative to deletion, admin demotion, or email verification, so resolve()
always re-reads the user row and builds the Identity from the store, using the
token only for its subject id.

Credential extraction precedence: "Authorization: Bearer <token>" header,
then the auth cookie. When both are present the header wins.

Layer rule: no imports from api/. Framework-free: dependencies.py adapts this
to FastAPI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.errors import Rejection
from auth.store import AuthStore
from auth.tokens import CredentialCodec

logger = logging.getLogger("clientportal.auth")

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Identity:
    """Minimal authenticated identity handed to route handlers."""

    user_id: int
    email: str
    is_admin: bool
    email_verified: bool


def extract_credential(authorization_header: str | None, cookie_value: str | None) -> str | None:
    """Return the raw credential from the header (preferred) or the cookie, else None."""
    if authorization_header and authorization_header.startswith(_BEARER_PREFIX):
        token = authorization_header[len(_BEARER_PREFIX) :].strip()
        if token:
            return token
    if cookie_value:
        return cookie_value
    return None


class IdentityResolver:
    """Verify a credential with the codec and confirm its subject still exists.

    Usage:
        resolver = IdentityResolver(codec, store)
        result = resolver.resolve(token)
        if isinstance(result, Rejection): ...
    """

    def __init__(self, codec: CredentialCodec, store: AuthStore) -> None:
        self._codec = codec
        self._store = store

    def resolve(self, token: str | None) -> Identity | Rejection:
        """Return the Identity for token, or a Rejection reason.

        Expected failures are returned, not raised. StoreUnavailableError from
        the user lookup propagates -- an outage is not an authentication failure.
        """
        if not token:
            return Rejection.UNAUTHENTICATED
        claims = self._codec.verify(token)
        if isinstance(claims, Rejection):
            logger.debug("Credential rejected: %s", claims.value)
            return claims
        user = self._store.get_user_by_id(claims.user_id)
        if user is None:
            # Signature valid but the subject was deleted after issue.
            logger.info("Credential for deleted user_id=%s rejected", claims.user_id)
            return Rejection.UNAUTHENTICATED
        return Identity(
            user_id=user.id,
            email=user.email,
            is_admin=user.is_admin,
            email_verified=user.email_verified,
        )
