"""
api/routes/v1/organizations.py -- Organization and membership REST endpoints.

Routes:
  POST  /api/v1/organizations                              -- create; caller becomes OWNER
  GET   /api/v1/organizations                              -- caller's organizations and roles
  GET   /api/v1/organizations/{org_id}                     -- organization detail (member or admin)
  GET   /api/v1/organizations/{org_id}/members             -- members:read
  POST  /api/v1/organizations/{org_id}/members             -- members:invite
  PATCH /api/v1/organizations/{org_id}/members/{user_id}   -- members:update-role (OWNER only)

Authorization lives in OrganizationAccess: membership (or the global admin
flag) first, then the role's permission for the action. Handlers only map
results to response models; failures surface as AuthError subclasses and are
rendered by the app-level handler.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    MemberAdd,
    MemberResponse,
    MemberRoleUpdate,
    MembershipSummary,
    OrganizationCreate,
    OrganizationResponse,
)
from auth.dependencies import get_current_identity
from auth.identity import Identity
from auth.organizations import OrganizationAccess
from auth.store import AuthStore

# Every organization route requires a verified identity.
router = APIRouter()


def _organization_response(request: Request, organization) -> OrganizationResponse:
    store: AuthStore = request.app.state.store
    billing = store.get_billing_account(organization.id)
    return OrganizationResponse.from_organization(organization, billing.status if billing else None)


@router.post("/organizations", response_model=OrganizationResponse, status_code=201)
def create_organization(
    request: Request,
    body: OrganizationCreate,
    identity: Identity = Depends(get_current_identity),
) -> OrganizationResponse:
    access: OrganizationAccess = request.app.state.organizations
    organization = access.create_organization(identity, body.name, body.slug)
    return _organization_response(request, organization)


@router.get("/organizations", response_model=list[MembershipSummary])
def list_organizations(
    request: Request,
    identity: Identity = Depends(get_current_identity),
) -> list[MembershipSummary]:
    access: OrganizationAccess = request.app.state.organizations
    return [
        MembershipSummary(id=org.id, name=org.name, slug=org.slug, role=role)
        for org, role in access.list_for_user(identity)
    ]


@router.get("/organizations/{org_id}", response_model=OrganizationResponse)
def get_organization(
    request: Request,
    org_id: int,
    identity: Identity = Depends(get_current_identity),
) -> OrganizationResponse:
    """Read access: any member, or a global administrator without a membership."""
    access: OrganizationAccess = request.app.state.organizations
    return _organization_response(request, access.authorize_read(identity, org_id))


@router.get("/organizations/{org_id}/members", response_model=list[MemberResponse])
def list_members(
    request: Request,
    org_id: int,
    identity: Identity = Depends(get_current_identity),
) -> list[MemberResponse]:
    access: OrganizationAccess = request.app.state.organizations
    return [MemberResponse.from_member(m) for m in access.list_members(identity, org_id)]


@router.post("/organizations/{org_id}/members", response_model=MemberResponse, status_code=201)
def add_member(
    request: Request,
    org_id: int,
    body: MemberAdd,
    identity: Identity = Depends(get_current_identity),
) -> MemberResponse:
    access: OrganizationAccess = request.app.state.organizations
    return MemberResponse.from_member(access.add_member(identity, org_id, body.user_id, body.role))


@router.patch("/organizations/{org_id}/members/{user_id}", response_model=MemberResponse)
def update_member_role(
    request: Request,
    org_id: int,
    user_id: int,
    body: MemberRoleUpdate,
    identity: Identity = Depends(get_current_identity),
) -> MemberResponse:
    """Change a member's role. Only OWNER may do this; the last OWNER cannot be demoted."""
    access: OrganizationAccess = request.app.state.organizations
    return MemberResponse.from_member(access.update_member_role(identity, org_id, user_id, body.role))
