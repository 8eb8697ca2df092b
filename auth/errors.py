"""
auth/errors.py -- Error taxonomy for identity, session, and authorization.

Two kinds of failure live here:

  Rejection -- an expected credential outcome (expired, tampered, garbage).
      The codec and the identity resolver RETURN these; they never raise for
      them. The route guard maps each reason to a boundary response.

  AuthError subclasses -- conditions that abort an operation. Each carries a
      stable machine code and the HTTP status the API layer renders it with,
      so api/main.py needs one exception handler instead of one per class.

StoreUnavailableError is deliberately not a subclass of UnauthenticatedError:
a database outage must never look like a bad credential to the caller.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum


class Rejection(str, Enum):
    """Tagged reason a presented credential was not accepted."""

    EXPIRED = "expired"
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    UNAUTHENTICATED = "unauthenticated"


class AuthError(Exception):
    """Base class for all operation-aborting auth failures."""

    code: str = "auth_error"
    status_code: int = 400
    default_message: str = "Authentication error."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class UnauthenticatedError(AuthError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Authentication required."


class UnverifiedError(AuthError):
    code = "email_unverified"
    status_code = 403
    default_message = "Email address has not been verified."


class ForbiddenError(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have access to this resource."


class PermissionDeniedError(ForbiddenError):
    """Raised by rbac.require_permission() when a role may not perform an action."""

    code = "permission_denied"

    def __init__(self, action: str, message: str | None = None) -> None:
        self.action = action
        super().__init__(message or f"Permission denied: {action}")


class InsufficientScopeError(ForbiddenError):
    """A valid API key that was not granted the scope an operation needs."""

    code = "insufficient_scope"

    def __init__(self, required_scope: str) -> None:
        self.required_scope = required_scope
        super().__init__(f"API key lacks required scope: {required_scope}")


class InvalidApiKeyError(UnauthenticatedError):
    code = "invalid_api_key"
    default_message = "API key is invalid, revoked, or expired."


class NotFoundError(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found."


class ConflictError(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "Resource already exists."


class MalformedError(AuthError):
    code = "malformed"
    status_code = 422
    default_message = "Request is malformed."


class OAuthProfileError(AuthError):
    """The provider callback did not carry what account linking needs (e.g. no email)."""

    code = "oauth_failed"
    status_code = 400
    default_message = "OAuth authentication failed."


class StoreUnavailableError(AuthError):
    code = "unavailable"
    status_code = 503
    default_message = "The identity store is temporarily unavailable."


class UnknownPermissionError(LookupError):
    """An action name that is not in the permission matrix.

    This is a configuration/programming error, not an authorization outcome,
    so it is not an AuthError and is never rendered as a 403.
    """
