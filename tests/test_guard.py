"""
tests/test_guard.py -- Ordered route guard policy, checked without HTTP.
"""

from __future__ import annotations

import pytest

from auth.errors import Rejection
from auth.guard import GuardOutcome, RouteGuard, Surface
from auth.identity import Identity

CLIENT = Identity(user_id=1, email="client@example.com", is_admin=False, email_verified=True)
ADMIN = Identity(user_id=2, email="staff@example.com", is_admin=True, email_verified=True)
UNVERIFIED_CLIENT = Identity(user_id=3, email="new@example.com", is_admin=False, email_verified=False)
UNVERIFIED_ADMIN = Identity(user_id=4, email="newstaff@example.com", is_admin=True, email_verified=False)


@pytest.fixture
def guard() -> RouteGuard:
    return RouteGuard(admin_landing_path="/admin", verify_email_path="/auth/verify-email")


class TestGuardPolicy:
    @pytest.mark.parametrize("surface", list(Surface))
    def test_no_identity_is_unauthenticated(self, guard: RouteGuard, surface: Surface) -> None:
        decision = guard.evaluate(None, surface)
        assert decision.outcome is GuardOutcome.UNAUTHENTICATED
        assert decision.reason is Rejection.UNAUTHENTICATED

    @pytest.mark.parametrize("reason", list(Rejection))
    def test_rejection_reason_is_kept(self, guard: RouteGuard, reason: Rejection) -> None:
        decision = guard.evaluate(reason, Surface.ANY)
        assert decision.outcome is GuardOutcome.UNAUTHENTICATED
        assert decision.reason is reason

    @pytest.mark.parametrize("surface", list(Surface))
    def test_unverified_is_sent_to_verify(self, guard: RouteGuard, surface: Surface) -> None:
        decision = guard.evaluate(UNVERIFIED_CLIENT, surface)
        assert decision.outcome is GuardOutcome.UNVERIFIED
        assert decision.redirect_to == "/auth/verify-email"

    def test_unverified_beats_forbidden_on_admin_surface(self, guard: RouteGuard) -> None:
        assert guard.evaluate(UNVERIFIED_CLIENT, Surface.ADMIN).outcome is GuardOutcome.UNVERIFIED

    def test_unverified_admin_beats_redirect_on_client_surface(self, guard: RouteGuard) -> None:
        assert guard.evaluate(UNVERIFIED_ADMIN, Surface.CLIENT).outcome is GuardOutcome.UNVERIFIED

    def test_client_on_admin_surface_is_forbidden(self, guard: RouteGuard) -> None:
        assert guard.evaluate(CLIENT, Surface.ADMIN).outcome is GuardOutcome.FORBIDDEN

    def test_admin_on_client_surface_is_redirected(self, guard: RouteGuard) -> None:
        decision = guard.evaluate(ADMIN, Surface.CLIENT)
        assert decision.outcome is GuardOutcome.REDIRECT
        assert decision.redirect_to == "/admin"

    @pytest.mark.parametrize(
        "identity,surface",
        [(CLIENT, Surface.ANY), (CLIENT, Surface.CLIENT), (ADMIN, Surface.ANY), (ADMIN, Surface.ADMIN)],
    )
    def test_allowed(self, guard: RouteGuard, identity: Identity, surface: Surface) -> None:
        decision = guard.evaluate(identity, surface)
        assert decision.allowed
        assert decision.identity is identity

    def test_paths_are_configurable(self) -> None:
        guard = RouteGuard(admin_landing_path="/staff", verify_email_path="/verify")
        assert guard.evaluate(ADMIN, Surface.CLIENT).redirect_to == "/staff"
        assert guard.evaluate(UNVERIFIED_CLIENT).redirect_to == "/verify"
