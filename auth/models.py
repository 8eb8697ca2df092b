"""
auth/models.py -- Domain dataclasses for identity and tenancy entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the services do the work.

Timestamps are ISO 8601 UTC strings, as written by the store. Callers that
compare expiries parse them with datetime.fromisoformat().

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """A person who can sign in to the portal.

    email is always stored lower-cased; uniqueness is case-insensitive.
    email_verified_at is None until the address is confirmed (or the user was
    created from an OAuth provider that already verified it).
    hashed_password is None for OAuth-only users.
    is_admin is the global staff flag, independent of organization roles.
    """

    email: str
    id: int | None = None
    name: str | None = None
    hashed_password: str | None = None
    email_verified_at: str | None = None
    is_admin: bool = False
    image: str | None = None
    phone_number: str | None = None
    onboarding_completed: bool = False
    created_at: str | None = None

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class ExternalAccount:
    """Links a User to one identity at an external OAuth provider.

    (provider, provider_account_id) is unique -- it resolves to at most one user.
    """

    user_id: int
    provider: str  # "google", "github"
    provider_account_id: str  # provider's stable user ID
    id: int | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    access_token_expires_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """A login session. token is opaque and random; expires_at is wall-clock UTC."""

    user_id: int
    token: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class Verification:
    """A single-use emailed token (email confirmation or password reset)."""

    identifier: str  # lower-cased email
    value: str
    purpose: str  # "email_verification" | "password_reset"
    expires_at: str
    id: int | None = None


@dataclass
class Organization:
    name: str
    slug: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class BillingAccount:
    """Billing state for an organization. Consulted, not owned, by API key validation."""

    organization_id: int
    status: str = "ACTIVE"  # "ACTIVE" | "PAST_DUE" | "SUSPENDED"
    id: int | None = None


@dataclass
class OrganizationMember:
    organization_id: int
    user_id: int
    role: str  # one of rbac.MemberRole
    id: int | None = None
    created_at: str | None = None


@dataclass
class ApiKey:
    """A long-lived, organization-scoped credential for machine clients.

    Security design:
    - key_hash is SHA-256(raw_key) as hex. Deterministic, so validation is a
      lookup by hash. The raw key carries 256 bits of entropy, which makes a
      slow password hash unnecessary.
    - key_prefix (first 12 chars of the raw key) is stored for display only.
    - The raw key is never persisted. It is returned ONCE at creation.
    """

    organization_id: int
    name: str
    key_hash: str
    key_prefix: str
    scopes: list[str] = field(default_factory=list)
    rate_limit: int = 1000
    id: int | None = None
    created_by: int | None = None
    expires_at: str | None = None
    last_used_at: str | None = None
    created_at: str | None = None
    is_active: bool = True
