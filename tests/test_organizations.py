"""
tests/test_organizations.py -- Membership-aware authorization on organization operations.
"""

from __future__ import annotations

import pytest
from conftest import add_member, create_org, create_user, identity_of

from auth.errors import ConflictError, ForbiddenError, NotFoundError, PermissionDeniedError
from auth.organizations import OrganizationAccess
from auth.rbac import MemberRole, Permission
from auth.store import AuthStore


@pytest.fixture
def access(store: AuthStore) -> OrganizationAccess:
    return OrganizationAccess(store)


class TestCreateOrganization:
    def test_creator_becomes_owner_with_active_billing(self, store: AuthStore, access: OrganizationAccess) -> None:
        founder = create_user(store, "founder@acme.test")
        org = access.create_organization(identity_of(founder), "Acme", "acme")

        assert org.slug == "acme"
        assert store.get_membership(org.id, founder.id).role == "OWNER"
        assert store.get_billing_account(org.id).status == "ACTIVE"
        assert access.list_for_user(identity_of(founder)) == [(org, MemberRole.OWNER)]

    def test_duplicate_slug_conflicts(self, store: AuthStore, access: OrganizationAccess) -> None:
        founder = create_user(store, "founder@acme.test")
        access.create_organization(identity_of(founder), "Acme", "acme")
        with pytest.raises(ConflictError):
            access.create_organization(identity_of(founder), "Acme Two", "acme")


class TestAuthorize:
    def test_unknown_organization(self, store: AuthStore, access: OrganizationAccess) -> None:
        user = create_user(store, "a@example.com")
        with pytest.raises(NotFoundError):
            access.authorize(identity_of(user), 404, Permission.ORG_READ)

    def test_non_member_is_forbidden(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id = create_org(store, "acme")
        outsider = create_user(store, "outsider@example.com")
        with pytest.raises(ForbiddenError):
            access.authorize(identity_of(outsider), org_id, Permission.ORG_READ)

    def test_member_allowed_by_role(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id = create_org(store, "acme")
        member = create_user(store, "member@acme.test")
        add_member(store, org_id, member, MemberRole.MEMBER)
        membership = access.authorize(identity_of(member), org_id, Permission.SERVICES_READ)
        assert membership.role == "MEMBER"

    def test_member_denied_by_role(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id = create_org(store, "acme")
        member = create_user(store, "member@acme.test")
        add_member(store, org_id, member, MemberRole.MEMBER)
        with pytest.raises(PermissionDeniedError):
            access.authorize(identity_of(member), org_id, Permission.BILLING_READ)

    def test_global_admin_reads_but_cannot_mutate_without_role(
        self, store: AuthStore, access: OrganizationAccess
    ) -> None:
        org_id = create_org(store, "acme")
        staff = create_user(store, "staff@portal.test", is_admin=True)
        assert access.authorize_read(identity_of(staff), org_id).id == org_id
        with pytest.raises(PermissionDeniedError):
            access.authorize(identity_of(staff), org_id, Permission.ORG_UPDATE)


class TestMembers:
    def _org_with_owner(self, store: AuthStore):
        org_id = create_org(store, "acme")
        owner = create_user(store, "owner@acme.test")
        add_member(store, org_id, owner, MemberRole.OWNER)
        return org_id, owner

    def test_owner_adds_member(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id, owner = self._org_with_owner(store)
        newcomer = create_user(store, "new@acme.test")
        member = access.add_member(identity_of(owner), org_id, newcomer.id, MemberRole.BILLING)
        assert member.role == "BILLING"
        assert [m.user_id for m in access.list_members(identity_of(owner), org_id)] == [owner.id, newcomer.id]

    def test_adding_twice_conflicts(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id, owner = self._org_with_owner(store)
        newcomer = create_user(store, "new@acme.test")
        access.add_member(identity_of(owner), org_id, newcomer.id, MemberRole.MEMBER)
        with pytest.raises(ConflictError):
            access.add_member(identity_of(owner), org_id, newcomer.id, MemberRole.ADMIN)

    def test_adding_unknown_user(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id, owner = self._org_with_owner(store)
        with pytest.raises(NotFoundError):
            access.add_member(identity_of(owner), org_id, 999, MemberRole.MEMBER)

    def test_only_owner_updates_roles(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id, owner = self._org_with_owner(store)
        admin = create_user(store, "admin@acme.test")
        member = create_user(store, "member@acme.test")
        add_member(store, org_id, admin, MemberRole.ADMIN)
        add_member(store, org_id, member, MemberRole.MEMBER)

        with pytest.raises(PermissionDeniedError):
            access.update_member_role(identity_of(admin), org_id, member.id, MemberRole.ADMIN)

        updated = access.update_member_role(identity_of(owner), org_id, member.id, MemberRole.ADMIN)
        assert updated.role == "ADMIN"
        assert store.get_membership(org_id, member.id).role == "ADMIN"

    def test_last_owner_cannot_be_demoted(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id, owner = self._org_with_owner(store)
        with pytest.raises(ConflictError):
            access.update_member_role(identity_of(owner), org_id, owner.id, MemberRole.ADMIN)

    def test_owner_demotable_when_another_owner_exists(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id, owner = self._org_with_owner(store)
        co_owner = create_user(store, "co@acme.test")
        add_member(store, org_id, co_owner, MemberRole.OWNER)
        access.update_member_role(identity_of(co_owner), org_id, owner.id, MemberRole.MEMBER)
        assert store.get_membership(org_id, owner.id).role == "MEMBER"

    def test_owners_cannot_demote_each_other_to_zero(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id, owner = self._org_with_owner(store)
        co_owner = create_user(store, "co@acme.test")
        add_member(store, org_id, co_owner, MemberRole.OWNER)
        access.update_member_role(identity_of(owner), org_id, co_owner.id, MemberRole.ADMIN)
        with pytest.raises(ConflictError):
            access.update_member_role(identity_of(owner), org_id, owner.id, MemberRole.ADMIN)
        assert store.get_membership(org_id, owner.id).role == "OWNER"

    def test_update_unknown_member(self, store: AuthStore, access: OrganizationAccess) -> None:
        org_id, owner = self._org_with_owner(store)
        with pytest.raises(NotFoundError):
            access.update_member_role(identity_of(owner), org_id, 999, MemberRole.MEMBER)
