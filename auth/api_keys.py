"""
auth/api_keys.py -- Long-lived, organization-scoped API keys.

Key format: "cvt_" + 32 random bytes (base64url). 256 bits of entropy make
brute force infeasible, so the stored form is a plain SHA-256 digest:
deterministic (validation is a lookup by hash) and one-way. The hash is not
keyed with SECRET_KEY on purpose -- rotating the JWT signing secret must not
revoke every integration key.

Validation refuses a key that is unknown, inactive, past its expiry, or whose
organization's billing account is SUSPENDED. After a successful validation the
last-used timestamp is bumped fire-and-forget; a failure there is logged and
never reaches the caller.

Scopes are a closed, flat set of capability strings. They are independent of
organization roles: a key authorizes machine access, a role authorizes people.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from auth.background import BestEffortDispatcher
from auth.errors import InsufficientScopeError, InvalidApiKeyError, MalformedError, NotFoundError
from auth.identity import Identity
from auth.models import ApiKey
from auth.organizations import OrganizationAccess
from auth.rbac import Permission
from auth.store import AuthStore
from auth.tokens import Clock, utc_now

logger = logging.getLogger("clientportal.auth.api_keys")

API_KEY_PREFIX = "cvt_"
_DISPLAY_PREFIX_LENGTH = 12  # "cvt_" + 8 chars

API_SCOPES: dict[str, str] = {
    "pos:read": "Read POS data",
    "pos:write": "Create POS transactions",
    "pos:void": "Void POS transactions",
    "usage:write": "Report usage events",
    "org:read": "Read organization info",
    "billing:read": "Read billing information",
    "services:read": "Read subscribed services",
}

BILLING_SUSPENDED = "SUSPENDED"


@dataclass(frozen=True)
class GeneratedApiKey:
    key: str  # plaintext, shown once
    key_hash: str
    key_prefix: str


@dataclass(frozen=True)
class ValidatedApiKey:
    id: int
    organization_id: int
    scopes: tuple[str, ...]
    rate_limit: int


def hash_api_key(raw_key: str) -> str:
    """Return SHA-256(raw_key) as hex."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> GeneratedApiKey:
    key = f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return GeneratedApiKey(key=key, key_hash=hash_api_key(key), key_prefix=key[:_DISPLAY_PREFIX_LENGTH])


def has_scope(granted: Iterable[str], required: str) -> bool:
    return required in set(granted)


def validate_scopes(scopes: Iterable[str]) -> list[str]:
    """Deduplicate scopes preserving order; raise MalformedError for unknown names."""
    result: list[str] = []
    for scope in scopes:
        if scope not in API_SCOPES:
            raise MalformedError(f"Unknown API scope: {scope!r}")
        if scope not in result:
            result.append(scope)
    return result


def _as_utc(moment: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class ApiKeyManager:
    """Create, list, revoke and validate organization API keys.

    Usage:
        manager = ApiKeyManager(store, BestEffortDispatcher())
        created, plaintext = manager.create(actor, org_id, "POS terminal", ["pos:read"])
        key = manager.authorize(plaintext, "pos:read")
    """

    def __init__(
        self,
        store: AuthStore,
        dispatcher: BestEffortDispatcher,
        *,
        default_rate_limit: int = 1000,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._access = OrganizationAccess(store)
        self._default_rate_limit = default_rate_limit
        self._clock = clock

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, raw_key: str) -> ValidatedApiKey | None:
        """Return the key's grant if it may be used right now, else None."""
        if not raw_key:
            return None
        found = self._store.find_api_key_for_validation(hash_api_key(raw_key))
        if found is None:
            return None
        key, billing_status = found
        if not key.is_active:
            logger.info("API key %s refused: revoked", key.key_prefix)
            return None
        if key.expires_at and _as_utc(datetime.fromisoformat(key.expires_at)) <= self._clock():
            logger.info("API key %s refused: expired", key.key_prefix)
            return None
        if billing_status == BILLING_SUSPENDED:
            logger.info("API key %s refused: org %s billing suspended", key.key_prefix, key.organization_id)
            return None

        self._dispatcher.dispatch("api_key_last_used", self._store.update_api_key_last_used, key.id)
        return ValidatedApiKey(
            id=key.id,
            organization_id=key.organization_id,
            scopes=tuple(key.scopes),
            rate_limit=key.rate_limit,
        )

    def authorize(self, raw_key: str, required_scope: str) -> ValidatedApiKey:
        """Validate raw_key and require required_scope.

        Raises InvalidApiKeyError when the key itself is unusable and
        InsufficientScopeError when it is valid but lacks the scope, so callers
        can tell "bad key" from "key lacks permission".
        """
        if required_scope not in API_SCOPES:
            raise ValueError(f"Unknown API scope: {required_scope!r}")
        validated = self.validate(raw_key)
        if validated is None:
            raise InvalidApiKeyError()
        if not has_scope(validated.scopes, required_scope):
            raise InsufficientScopeError(required_scope)
        return validated

    # ------------------------------------------------------------------
    # Management (organization admins)
    # ------------------------------------------------------------------

    def create(
        self,
        actor: Identity,
        organization_id: int,
        name: str,
        scopes: Iterable[str],
        *,
        rate_limit: int | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[ApiKey, str]:
        """Create a key for the organization. Returns (stored record, plaintext key).

        The plaintext is returned exactly once and never persisted.
        """
        self._access.authorize(actor, organization_id, Permission.API_KEYS_CREATE)
        granted = validate_scopes(scopes)
        if expires_at is not None:
            expires_at = _as_utc(expires_at)
        if expires_at is not None and expires_at <= self._clock():
            raise MalformedError("API key expiry must be in the future.")

        generated = generate_api_key()
        api_key = ApiKey(
            organization_id=organization_id,
            name=name,
            key_hash=generated.key_hash,
            key_prefix=generated.key_prefix,
            scopes=granted,
            rate_limit=rate_limit if rate_limit is not None else self._default_rate_limit,
            created_by=actor.user_id,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        api_key.id = self._store.create_api_key(api_key)
        logger.info("API key %s created for org %s by user_id=%s", api_key.key_prefix, organization_id, actor.user_id)
        return self._store.get_api_key(api_key.id), generated.key

    def list_keys(self, actor: Identity, organization_id: int) -> list[ApiKey]:
        self._access.authorize(actor, organization_id, Permission.API_KEYS_READ)
        return self._store.list_api_keys(organization_id)

    def revoke(self, actor: Identity, organization_id: int, key_id: int) -> None:
        """Deactivate a key. Keys are never deleted so audits can still name them."""
        self._access.authorize(actor, organization_id, Permission.API_KEYS_REVOKE)
        if not self._store.deactivate_api_key(key_id, organization_id):
            raise NotFoundError("API key not found.")
        logger.info("API key id=%s revoked for org %s by user_id=%s", key_id, organization_id, actor.user_id)
