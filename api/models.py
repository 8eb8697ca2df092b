"""
API request and response models for the client portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from auth.models import ApiKey, Organization, OrganizationMember, User
from auth.rbac import MemberRole

# ---------------------------------------------------------------------------
# Request models -- credentials
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    Email syntax and password strength are checked by AuthService so the
    rules live in one place; only length bounds are enforced here.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=128)
    name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout. With a refresh token the session row is deleted too."""

    refresh_token: Optional[str] = None


class EmailRequest(BaseModel):
    """Request body for the verification-email and password-reset request endpoints."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)


class PasswordResetRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=128)


class OnboardingRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone_number: Optional[str] = Field(default=None, min_length=1, max_length=32)


# ---------------------------------------------------------------------------
# Response models -- credentials and users
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str]
    image: Optional[str]
    phone_number: Optional[str]
    email_verified: bool
    is_admin: bool
    onboarding_completed: bool
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            image=user.image,
            phone_number=user.phone_number,
            email_verified=user.email_verified,
            is_admin=user.is_admin,
            onboarding_completed=user.onboarding_completed,
            created_at=user.created_at or "",
        )


class TokenResponse(BaseModel):
    """Response for signup, login, refresh and the OAuth JSON callback."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class MeResponse(UserResponse):
    """Response for GET /api/v1/auth/me: the user plus linked OAuth providers."""

    linked_providers: list[str] = []


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class TokenDeliveryResponse(MessageResponse):
    """Response for the verification-email and password-reset request endpoints.

    token is populated only when the server runs with DEBUG=true and the email
    is known; in production the token goes to the mailer, never to the caller.
    """

    token: Optional[str] = None


class OAuthProviderInfo(BaseModel):
    """One entry in GET /api/v1/auth/providers. Drives the login page's buttons."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/organizations/{id}/api-keys.

    Scope names are validated against the closed scope set by ApiKeyManager.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    scopes: list[str] = Field(min_length=1, max_length=20)
    rate_limit: Optional[int] = Field(default=None, ge=1, le=100_000)
    # An offset is required; a naive timestamp is ambiguous and answered with 422.
    expires_at: Optional[AwareDatetime] = None


class ApiKeyResponse(BaseModel):
    """One API key. The raw key is never included -- only the display prefix."""

    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    name: str
    key_prefix: str
    scopes: list[str]
    rate_limit: int
    is_active: bool
    created_at: str
    last_used_at: Optional[str]
    expires_at: Optional[str]

    @classmethod
    def from_api_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            organization_id=key.organization_id,
            name=key.name,
            key_prefix=key.key_prefix,
            scopes=list(key.scopes),
            rate_limit=key.rate_limit,
            is_active=key.is_active,
            created_at=key.created_at or "",
            last_used_at=key.last_used_at,
            expires_at=key.expires_at,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Response for key creation. key is the plaintext, shown exactly once."""

    key: str


class ApiScopeInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str


class ApiKeyGrantResponse(BaseModel):
    """What a presented X-API-Key is allowed to do."""

    model_config = ConfigDict(frozen=True)

    key_id: int
    organization_id: int
    scopes: list[str]
    rate_limit: int


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


class OrganizationCreate(BaseModel):
    """Request body for POST /api/v1/organizations. The caller becomes OWNER."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    slug: str = Field(min_length=2, max_length=64, pattern=SLUG_PATTERN)


class MembershipSummary(BaseModel):
    """One row of GET /api/v1/organizations: an organization and the caller's role in it."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    slug: str
    role: MemberRole


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    slug: str
    billing_status: Optional[str]
    created_at: str

    @classmethod
    def from_organization(cls, org: Organization, billing_status: Optional[str]) -> "OrganizationResponse":
        return cls(
            id=org.id,
            name=org.name,
            slug=org.slug,
            billing_status=billing_status,
            created_at=org.created_at or "",
        )


class MemberAdd(BaseModel):
    user_id: int = Field(ge=1)
    role: MemberRole = MemberRole.MEMBER


class MemberRoleUpdate(BaseModel):
    role: MemberRole


class MemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: int
    user_id: int
    role: MemberRole

    @classmethod
    def from_member(cls, member: OrganizationMember) -> "MemberResponse":
        return cls(organization_id=member.organization_id, user_id=member.user_id, role=MemberRole(member.role))


# ---------------------------------------------------------------------------
# Portal surfaces
# ---------------------------------------------------------------------------


class SurfaceResponse(BaseModel):
    """Landing payload for the client and admin surfaces."""

    model_config = ConfigDict(frozen=True)

    surface: str
    user_id: int
    email: str
    is_admin: bool


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
