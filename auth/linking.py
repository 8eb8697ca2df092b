"""
auth/linking.py -- Map an OAuth provider callback onto exactly one local user.

On each callback the first matching rule wins:

  1. An ExternalAccount exists for (provider, provider_account_id)
     -> reuse its owning user.
  2. A User exists with the callback email (case-insensitive)
     -> create an ExternalAccount for that user (account merge by email).
  3. Otherwise
     -> create a verified User and its first ExternalAccount together.

Cached provider tokens on the ExternalAccount are refreshed in every branch.
The flow ends by starting a Session and issuing a token pair, the same way a
password login does.

Account merge by email (rule 2) is a policy decision: the provider's email
ownership is taken as proof that both identities are the same person. The
provider adapter (auth/oauth.py) only hands over provider-verified addresses.

Concurrency: the store's UNIQUE constraints on users.email and
(provider, provider_account_id) pick one winner when two callbacks race. The
loser gets IntegrityError, which means "someone else created it", so we
re-resolve from rule 1 instead of failing.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError, NotFoundError, OAuthProfileError
from auth.models import ExternalAccount, User
from auth.sessions import SessionIssuer
from auth.store import AuthStore
from auth.tokens import Clock, TokenPair, utc_now

logger = logging.getLogger("clientportal.auth.linking")


@dataclass(frozen=True)
class OAuthProfile:
    """Provider-neutral view of a callback: who the provider says this is."""

    provider_account_id: str
    email: str | None
    display_name: str | None = None
    picture_url: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None  # seconds until access_token expires


class LinkOutcome(str, Enum):
    EXISTING_ACCOUNT = "existing_account"
    LINKED_BY_EMAIL = "linked_by_email"
    CREATED_USER = "created_user"


@dataclass(frozen=True)
class LinkResult:
    user_id: int
    email: str
    is_admin: bool
    email_verified: bool
    onboarding_completed: bool
    outcome: LinkOutcome
    session_id: int
    tokens: TokenPair

    @property
    def is_new_user(self) -> bool:
        return self.outcome is LinkOutcome.CREATED_USER


class OAuthLinkingEngine:
    """Resolve provider identities to local users and start their sessions."""

    _MAX_ATTEMPTS = 3

    def __init__(self, store: AuthStore, sessions: SessionIssuer, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._sessions = sessions
        self._clock = clock

    def link(self, provider: str, profile: OAuthProfile) -> LinkResult:
        """Resolve profile to one user, refresh its cached tokens, and start a session.

        Raises OAuthProfileError before touching the store when the profile has
        no email or no provider account id, so no partial user is ever created.
        """
        if not profile.email or not profile.email.strip():
            raise OAuthProfileError(f"{provider} OAuth: provider returned no email address")
        if not profile.provider_account_id:
            raise OAuthProfileError(f"{provider} OAuth: provider returned no account id")

        for attempt in range(1, self._MAX_ATTEMPTS + 1):
            try:
                user, outcome = self._resolve_user(provider, profile)
                break
            except IntegrityError:
                logger.info(
                    "Concurrent %s link for account %s (attempt %d); re-resolving",
                    provider,
                    profile.provider_account_id,
                    attempt,
                )
        else:
            raise ConflictError("Could not link the external account; please retry.")

        session, tokens = self._sessions.start(user)
        logger.info("OAuth %s login for user_id=%s (%s)", provider, user.id, outcome.value)
        return LinkResult(
            user_id=user.id,
            email=user.email,
            is_admin=user.is_admin,
            email_verified=user.email_verified,
            onboarding_completed=user.onboarding_completed,
            outcome=outcome,
            session_id=session.id,
            tokens=tokens,
        )

    def _resolve_user(self, provider: str, profile: OAuthProfile) -> tuple[User, LinkOutcome]:
        token_expiry = self._access_token_expiry(profile)

        # 1. Returning provider identity
        account = self._store.get_external_account(provider, profile.provider_account_id)
        if account is not None:
            user = self._store.get_user_by_id(account.user_id)
            if user is not None:
                self._store.update_external_account_tokens(
                    account.id,
                    profile.access_token,
                    profile.refresh_token or account.refresh_token,
                    token_expiry,
                )
                return self._fill_missing_image(user, profile), LinkOutcome.EXISTING_ACCOUNT

        new_account = ExternalAccount(
            user_id=0,
            provider=provider,
            provider_account_id=profile.provider_account_id,
            access_token=profile.access_token,
            refresh_token=profile.refresh_token,
            access_token_expires_at=token_expiry,
        )

        # 2. Known email -- merge
        user = self._store.get_user_by_email(profile.email)
        if user is not None:
            new_account.user_id = user.id
            self._store.create_external_account(new_account)
            return self._fill_missing_image(user, profile), LinkOutcome.LINKED_BY_EMAIL

        # 3. New user; the provider already verified the address
        new_user = User(
            email=profile.email,
            name=profile.display_name,
            image=profile.picture_url,
            email_verified_at=self._clock().isoformat(),
        )
        user_id, _ = self._store.create_user_with_external_account(new_user, new_account)
        return self._store.get_user_by_id(user_id), LinkOutcome.CREATED_USER

    def _access_token_expiry(self, profile: OAuthProfile) -> str | None:
        if profile.expires_in is None:
            return None
        return (self._clock() + timedelta(seconds=int(profile.expires_in))).isoformat()

    def _fill_missing_image(self, user: User, profile: OAuthProfile) -> User:
        if profile.picture_url and not user.image:
            self._store.update_user(user.id, image=profile.picture_url)
            user.image = profile.picture_url
        return user

    def unlink(self, user_id: int, provider: str) -> None:
        """Remove the user's link to provider.

        Refuses when it would leave the user with no way to sign in: no
        password and no other linked provider.
        """
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        accounts = self._store.list_external_accounts(user_id)
        target = next((a for a in accounts if a.provider == provider), None)
        if target is None:
            raise NotFoundError(f"{provider} account not linked.")
        if user.hashed_password is None and len(accounts) <= 1:
            raise ConflictError(f"Cannot unlink {provider} account. Please set a password first.")
        self._store.delete_external_account(target.id)
        logger.info("Unlinked %s account from user_id=%s", provider, user_id)
