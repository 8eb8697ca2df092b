"""
auth/guard.py -- Ordered gate in front of protected operations.

Policy, evaluated top to bottom, first hit wins:
  1. no identity (missing/invalid/expired credential)  -> UNAUTHENTICATED
  2. identity with an unverified email                  -> UNVERIFIED
  3. admin surface, identity is not an administrator    -> FORBIDDEN
  4. client surface, identity is an administrator       -> REDIRECT (admin landing)
  5. otherwise                                          -> ALLOW

Verification is checked before role on purpose: an unverified administrator
is sent to "verify your email", not told they are forbidden.

Framework-free; auth/dependencies.py turns decisions into HTTP responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from auth.errors import Rejection
from auth.identity import Identity


class Surface(str, Enum):
    ANY = "any"  # authenticated API endpoints usable by everyone
    CLIENT = "client"  # client self-service area
    ADMIN = "admin"  # internal staff area


class GuardOutcome(str, Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "unauthenticated"
    UNVERIFIED = "unverified"
    FORBIDDEN = "forbidden"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GuardDecision:
    outcome: GuardOutcome
    identity: Identity | None = None
    reason: Rejection | None = None
    redirect_to: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is GuardOutcome.ALLOW


class RouteGuard:
    def __init__(self, *, admin_landing_path: str = "/admin", verify_email_path: str = "/auth/verify-email") -> None:
        self.admin_landing_path = admin_landing_path
        self.verify_email_path = verify_email_path

    def evaluate(self, resolved: Identity | Rejection | None, surface: Surface = Surface.ANY) -> GuardDecision:
        if resolved is None or isinstance(resolved, Rejection):
            return GuardDecision(GuardOutcome.UNAUTHENTICATED, reason=resolved or Rejection.UNAUTHENTICATED)
        identity = resolved
        if not identity.email_verified:
            return GuardDecision(GuardOutcome.UNVERIFIED, identity=identity, redirect_to=self.verify_email_path)
        if surface is Surface.ADMIN and not identity.is_admin:
            return GuardDecision(GuardOutcome.FORBIDDEN, identity=identity)
        if surface is Surface.CLIENT and identity.is_admin:
            return GuardDecision(GuardOutcome.REDIRECT, identity=identity, redirect_to=self.admin_landing_path)
        return GuardDecision(GuardOutcome.ALLOW, identity=identity)
