"""
auth/service.py -- Password sign-up/sign-in and the email-token flows around them.

Every successful login goes through SessionIssuer.start(), the same terminal
step the OAuth linking engine uses, so both paths hand the client identical
credentials.

Email delivery is not done here. request_email_verification() and
request_password_reset() return the token to the caller (the API layer or a
mailer); for unknown emails they return None without signalling it, so the
HTTP response cannot be used to enumerate accounts.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError, MalformedError, NotFoundError, UnauthenticatedError
from auth.models import User, Verification
from auth.sessions import SessionIssuer
from auth.store import AuthStore, normalize_email
from auth.tokens import (
    _DUMMY_HASH,
    Clock,
    TokenPair,
    generate_random_token,
    hash_password,
    utc_now,
    verify_password,
)

logger = logging.getLogger("clientportal.auth")

PURPOSE_EMAIL_VERIFICATION = "email_verification"
PURPOSE_PASSWORD_RESET = "password_reset"

_MIN_PASSWORD_LENGTH = 8
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class AuthResult:
    user: User
    session_id: int | None
    tokens: TokenPair


def password_strength_errors(password: str) -> list[str]:
    """Return the list of unmet password rules (empty when the password is acceptable)."""
    errors = []
    if len(password) < _MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain a lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain an uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain a number")
    return errors


class AuthService:
    def __init__(
        self,
        store: AuthStore,
        sessions: SessionIssuer,
        *,
        verification_ttl: int = 24 * 3600,
        reset_ttl: int = 3600,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._verification_ttl = verification_ttl
        self._reset_ttl = reset_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Sign up / sign in / sign out / refresh
    # ------------------------------------------------------------------

    def sign_up(self, email: str, password: str, name: str | None = None, phone_number: str | None = None) -> AuthResult:
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise MalformedError("Invalid email address.")
        errors = password_strength_errors(password)
        if errors:
            raise MalformedError(", ".join(errors))
        if self._store.get_user_by_email(email) is not None:
            raise ConflictError("A user with this email already exists.")

        user = User(email=email, name=name, phone_number=phone_number, hashed_password=hash_password(password))
        try:
            user.id = self._store.create_user(user)
        except IntegrityError as exc:
            # Lost a race with a concurrent sign-up for the same address.
            raise ConflictError("A user with this email already exists.") from exc
        user = self._store.get_user_by_id(user.id)
        session, tokens = self._sessions.start(user)
        logger.info("User signed up: user_id=%s", user.id)
        return AuthResult(user=user, session_id=session.id, tokens=tokens)

    def sign_in(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password.

        Always runs bcrypt whether or not the user exists [C1]. Every failure
        raises the same UnauthenticatedError message.
        """
        user = self._store.get_user_by_email(email)
        if user is None or user.hashed_password is None:
            verify_password(password, _DUMMY_HASH)
            raise UnauthenticatedError("Invalid email or password.")
        if not verify_password(password, user.hashed_password):
            raise UnauthenticatedError("Invalid email or password.")
        session, tokens = self._sessions.start(user)
        return AuthResult(user=user, session_id=session.id, tokens=tokens)

    def sign_out(self, session_id: int) -> None:
        self._sessions.end(session_id)

    def refresh(self, refresh_token: str) -> AuthResult:
        user, tokens = self._sessions.refresh(refresh_token)
        return AuthResult(user=user, session_id=None, tokens=tokens)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def request_email_verification(self, email: str) -> str | None:
        user = self._store.get_user_by_email(email)
        if user is None:
            return None
        return self._issue_verification(user.email, PURPOSE_EMAIL_VERIFICATION, self._verification_ttl)

    def verify_email(self, token: str) -> None:
        verification = self._consume_verification(token, PURPOSE_EMAIL_VERIFICATION)
        if not self._store.mark_email_verified(verification.identifier):
            raise NotFoundError("User not found.")
        logger.info("Email verified for %s", verification.identifier)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> str | None:
        user = self._store.get_user_by_email(email)
        if user is None:
            return None
        return self._issue_verification(user.email, PURPOSE_PASSWORD_RESET, self._reset_ttl)

    def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password and revoke every existing session of the user."""
        errors = password_strength_errors(new_password)
        if errors:
            raise MalformedError(", ".join(errors))
        verification = self._consume_verification(token, PURPOSE_PASSWORD_RESET)
        user = self._store.get_user_by_email(verification.identifier)
        if user is None:
            raise NotFoundError("User not found.")
        self._store.update_user(user.id, hashed_password=hash_password(new_password))
        revoked = self._store.delete_user_sessions(user.id)
        logger.info("Password reset for user_id=%s; %d session(s) revoked", user.id, revoked)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def complete_onboarding(self, user_id: int, *, name: str | None = None, phone_number: str | None = None) -> User:
        fields: dict = {"onboarding_completed": True}
        if name is not None:
            fields["name"] = name
        if phone_number is not None:
            fields["phone_number"] = phone_number
        if not self._store.update_user(user_id, **fields):
            raise NotFoundError("User not found.")
        return self._store.get_user_by_id(user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_verification(self, email: str, purpose: str, ttl: int) -> str:
        value = generate_random_token(48)
        expires_at = (self._clock() + timedelta(seconds=ttl)).isoformat()
        self._store.create_verification(
            Verification(identifier=email, value=value, purpose=purpose, expires_at=expires_at)
        )
        return value

    def _consume_verification(self, token: str, purpose: str) -> Verification:
        """Look up a single-use token, delete it, and return it. Raises if invalid or expired."""
        verification = self._store.get_verification(token, purpose)
        if verification is None or datetime.fromisoformat(verification.expires_at) <= self._clock():
            raise UnauthenticatedError("Invalid or expired token.")
        self._store.delete_verification(verification.id)
        return verification
