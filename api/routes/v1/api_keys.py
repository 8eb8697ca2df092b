"""
api/routes/v1/api_keys.py -- Organization API key management and key-authenticated endpoints.

Routes (people, bearer credential):
  GET    /api/v1/api-keys/scopes                             -- the closed scope catalogue
  POST   /api/v1/organizations/{org_id}/api-keys             -- create (api-keys:create)
  GET    /api/v1/organizations/{org_id}/api-keys             -- list active keys (api-keys:read)
  DELETE /api/v1/organizations/{org_id}/api-keys/{key_id}    -- revoke (api-keys:revoke)

Routes (machines, X-API-Key header):
  GET    /api/v1/integrations/key             -- what the presented key may do
  GET    /api/v1/integrations/organization    -- the key's organization (scope org:read)

A key that is unknown, revoked, expired, or belongs to a SUSPENDED
organization gets 401 invalid_api_key. A usable key without the required
scope gets 403 insufficient_scope.

IDOR guard: revoke passes both key_id and org_id to the store; a key of
another organization is "not found", never revoked.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyGrantResponse,
    ApiKeyResponse,
    ApiScopeInfo,
    OrganizationResponse,
)
from auth.api_keys import API_SCOPES, ApiKeyManager, ValidatedApiKey
from auth.dependencies import get_api_key, get_current_identity, require_api_scope
from auth.errors import NotFoundError
from auth.identity import Identity
from auth.store import AuthStore

router = APIRouter()


# ---------------------------------------------------------------------------
# Key management (organization members)
# ---------------------------------------------------------------------------


@router.get("/api-keys/scopes", response_model=list[ApiScopeInfo])
def list_scopes(identity: Identity = Depends(get_current_identity)) -> list[ApiScopeInfo]:
    return [ApiScopeInfo(name=name, description=desc) for name, desc in API_SCOPES.items()]


@router.post("/organizations/{org_id}/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    org_id: int,
    body: ApiKeyCreate,
    identity: Identity = Depends(get_current_identity),
) -> ApiKeyCreatedResponse:
    """Generate a new key. The raw key is shown ONCE and never stored."""
    manager: ApiKeyManager = request.app.state.api_keys
    api_key, plaintext = manager.create(
        identity,
        org_id,
        body.name,
        body.scopes,
        rate_limit=body.rate_limit,
        expires_at=body.expires_at,
    )
    return ApiKeyCreatedResponse(**ApiKeyResponse.from_api_key(api_key).model_dump(), key=plaintext)


@router.get("/organizations/{org_id}/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    org_id: int,
    identity: Identity = Depends(get_current_identity),
) -> list[ApiKeyResponse]:
    """List the organization's active keys, newest first. Raw key values are never returned."""
    manager: ApiKeyManager = request.app.state.api_keys
    return [ApiKeyResponse.from_api_key(k) for k in manager.list_keys(identity, org_id)]


@router.delete("/organizations/{org_id}/api-keys/{key_id}", status_code=204)
def revoke_api_key(
    request: Request,
    org_id: int,
    key_id: int,
    identity: Identity = Depends(get_current_identity),
) -> Response:
    manager: ApiKeyManager = request.app.state.api_keys
    manager.revoke(identity, org_id, key_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Key-authenticated endpoints (machine clients)
# ---------------------------------------------------------------------------


@router.get("/integrations/key", response_model=ApiKeyGrantResponse)
def describe_api_key(key: ValidatedApiKey = Depends(get_api_key)) -> ApiKeyGrantResponse:
    return ApiKeyGrantResponse(
        key_id=key.id,
        organization_id=key.organization_id,
        scopes=list(key.scopes),
        rate_limit=key.rate_limit,
    )


@router.get("/integrations/organization", response_model=OrganizationResponse)
def integration_organization(
    request: Request,
    key: ValidatedApiKey = Depends(require_api_scope("org:read")),
) -> OrganizationResponse:
    store: AuthStore = request.app.state.store
    organization = store.get_organization(key.organization_id)
    if organization is None:
        raise NotFoundError("Organization not found.")
    billing = store.get_billing_account(organization.id)
    return OrganizationResponse.from_organization(organization, billing.status if billing else None)
