"""
auth/organizations.py -- Membership-aware authorization for organization-scoped operations.

Two checks, both required for organization-scoped mutations:
  1. can_access_organization() -- coarse: admin flag or a membership row.
  2. require_permission()      -- fine: the member's role allows this action.

A global administrator passes check 1 without a membership but still needs a
role for check 2. Staff who must mutate a client organization are added to it
as members first.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError, ForbiddenError, NotFoundError
from auth.identity import Identity
from auth.models import Organization, OrganizationMember
from auth.rbac import MemberRole, Permission, can_access_organization, require_permission
from auth.store import AuthStore

logger = logging.getLogger("clientportal.auth.organizations")


class OrganizationAccess:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def authorize(self, identity: Identity, organization_id: int, action: Permission | str) -> OrganizationMember | None:
        """Run both checks for action on organization_id and return the caller's membership.

        Raises NotFoundError for an unknown organization, ForbiddenError when
        the caller cannot access it, PermissionDeniedError when their role
        does not allow action.
        """
        if self._store.get_organization(organization_id) is None:
            raise NotFoundError("Organization not found.")
        membership = self._store.get_membership(organization_id, identity.user_id)
        if not can_access_organization(identity, membership):
            raise ForbiddenError("You are not a member of this organization.")
        require_permission(membership.role if membership else None, action)
        return membership

    def authorize_read(self, identity: Identity, organization_id: int) -> Organization:
        """Coarse read access: admins or any member. Returns the organization."""
        organization = self._store.get_organization(organization_id)
        if organization is None:
            raise NotFoundError("Organization not found.")
        membership = self._store.get_membership(organization_id, identity.user_id)
        if not can_access_organization(identity, membership):
            raise ForbiddenError("You are not a member of this organization.")
        return organization

    def create_organization(self, actor: Identity, name: str, slug: str) -> Organization:
        """Create an organization with an ACTIVE billing account and actor as its OWNER."""
        organization = Organization(name=name, slug=slug)
        try:
            organization.id = self._store.create_organization(
                organization, owner_id=actor.user_id, owner_role=MemberRole.OWNER.value
            )
        except IntegrityError as exc:
            raise ConflictError("An organization with this slug already exists.") from exc
        logger.info("Organization %s (%s) created by user_id=%s", organization.id, slug, actor.user_id)
        return self._store.get_organization(organization.id)

    def list_for_user(self, identity: Identity) -> list[tuple[Organization, MemberRole]]:
        """Organizations the identity is a member of, with the role held in each."""
        result = []
        for membership in self._store.list_user_memberships(identity.user_id):
            organization = self._store.get_organization(membership.organization_id)
            if organization is not None:
                result.append((organization, MemberRole(membership.role)))
        return result

    def list_members(self, actor: Identity, organization_id: int) -> list[OrganizationMember]:
        self.authorize(actor, organization_id, Permission.MEMBERS_READ)
        return self._store.list_members(organization_id)

    def add_member(
        self, actor: Identity, organization_id: int, user_id: int, role: MemberRole
    ) -> OrganizationMember:
        self.authorize(actor, organization_id, Permission.MEMBERS_INVITE)
        if self._store.get_user_by_id(user_id) is None:
            raise NotFoundError("User not found.")
        member = OrganizationMember(organization_id=organization_id, user_id=user_id, role=MemberRole(role).value)
        try:
            member.id = self._store.add_member(member)
        except IntegrityError as exc:
            raise ConflictError("User is already a member of this organization.") from exc
        logger.info("user_id=%s added to org %s as %s by user_id=%s", user_id, organization_id, role, actor.user_id)
        return member

    def update_member_role(
        self, actor: Identity, organization_id: int, user_id: int, role: MemberRole
    ) -> OrganizationMember:
        """Change a member's role. Restricted to OWNER by the permission matrix.

        Demoting the last OWNER is refused so the organization always keeps
        someone able to manage roles.
        """
        self.authorize(actor, organization_id, Permission.MEMBERS_UPDATE_ROLE)
        new_role = MemberRole(role)
        target = self._store.get_membership(organization_id, user_id)
        if target is None:
            raise NotFoundError("Member not found.")
        changed = self._store.update_member_role(
            organization_id, user_id, new_role.value, retain_role=MemberRole.OWNER.value
        )
        if not changed:
            if self._store.get_membership(organization_id, user_id) is None:
                raise NotFoundError("Member not found.")
            raise ConflictError("Cannot demote the last owner of an organization.")
        logger.info(
            "user_id=%s role in org %s changed %s -> %s by user_id=%s",
            user_id,
            organization_id,
            target.role,
            new_role.value,
            actor.user_id,
        )
        target.role = new_role.value
        return target
