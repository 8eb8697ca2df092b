"""
tests/test_service.py -- Password sign-up/sign-in and the email-token flows.
"""

from __future__ import annotations

import pytest
from conftest import PASSWORD, FakeClock, create_user

from auth.errors import ConflictError, MalformedError, NotFoundError, UnauthenticatedError
from auth.service import AuthService, password_strength_errors
from auth.sessions import SessionIssuer
from auth.store import AuthStore
from auth.tokens import CredentialCodec, TokenClaims, verify_password


@pytest.fixture
def service(store: AuthStore, sessions: SessionIssuer, clock: FakeClock) -> AuthService:
    return AuthService(store, sessions, verification_ttl=24 * 3600, reset_ttl=3600, clock=clock)


class TestPasswordRules:
    def test_strong_password_has_no_errors(self) -> None:
        assert password_strength_errors(PASSWORD) == []

    @pytest.mark.parametrize("password", ["Short1", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
    def test_weak_passwords(self, password: str) -> None:
        assert password_strength_errors(password)


class TestSignUp:
    def test_creates_unverified_user_with_session(
        self, store: AuthStore, service: AuthService, codec: CredentialCodec
    ) -> None:
        result = service.sign_up("  Ada@Example.COM ", PASSWORD, name="Ada")

        assert result.user.email == "ada@example.com"
        assert result.user.name == "Ada"
        assert not result.user.email_verified
        assert result.session_id is not None
        assert store.get_session(result.session_id).user_id == result.user.id
        claims = codec.verify(result.tokens.access_token)
        assert isinstance(claims, TokenClaims)
        assert claims.email_verified is False

    def test_password_is_hashed(self, store: AuthStore, service: AuthService) -> None:
        result = service.sign_up("ada@example.com", PASSWORD)
        stored = store.get_user_by_id(result.user.id)
        assert stored.hashed_password != PASSWORD
        assert verify_password(PASSWORD, stored.hashed_password)

    def test_duplicate_email_is_case_insensitive(self, service: AuthService) -> None:
        service.sign_up("ada@example.com", PASSWORD)
        with pytest.raises(ConflictError):
            service.sign_up("ADA@example.com", PASSWORD)

    def test_weak_password_rejected(self, store: AuthStore, service: AuthService) -> None:
        with pytest.raises(MalformedError):
            service.sign_up("ada@example.com", "weak")
        assert store.get_user_by_email("ada@example.com") is None

    @pytest.mark.parametrize("email", ["", "not-an-email", "a@b", "two words@example.com"])
    def test_invalid_email_rejected(self, service: AuthService, email: str) -> None:
        with pytest.raises(MalformedError):
            service.sign_up(email, PASSWORD)


class TestSignIn:
    def test_correct_password(self, store: AuthStore, service: AuthService) -> None:
        user = create_user(store, "ada@example.com", password=PASSWORD)
        result = service.sign_in("ADA@example.com", PASSWORD)
        assert result.user.id == user.id
        assert result.tokens.refresh_token

    def test_failures_share_one_message(self, store: AuthStore, service: AuthService) -> None:
        create_user(store, "ada@example.com", password=PASSWORD)
        create_user(store, "oauth-only@example.com")

        messages = set()
        for email, password in [
            ("ada@example.com", "Wrong-Password-1"),
            ("nobody@example.com", PASSWORD),
            ("oauth-only@example.com", PASSWORD),
        ]:
            with pytest.raises(UnauthenticatedError) as excinfo:
                service.sign_in(email, password)
            messages.add(excinfo.value.message)
        assert messages == {"Invalid email or password."}


class TestSignOutAndRefresh:
    def test_sign_out_revokes_refresh(self, service: AuthService) -> None:
        result = service.sign_up("ada@example.com", PASSWORD)
        service.sign_out(result.session_id)
        with pytest.raises(UnauthenticatedError):
            service.refresh(result.tokens.refresh_token)

    def test_refresh_issues_new_pair(self, service: AuthService, codec: CredentialCodec) -> None:
        result = service.sign_up("ada@example.com", PASSWORD)
        refreshed = service.refresh(result.tokens.refresh_token)
        assert refreshed.user.id == result.user.id
        assert isinstance(codec.verify(refreshed.tokens.access_token), TokenClaims)


class TestEmailVerification:
    def test_round_trip(self, store: AuthStore, service: AuthService) -> None:
        user = create_user(store, "ada@example.com", verified=False)
        token = service.request_email_verification("Ada@Example.com")
        assert token

        service.verify_email(token)
        assert store.get_user_by_id(user.id).email_verified

    def test_token_is_single_use(self, store: AuthStore, service: AuthService) -> None:
        create_user(store, "ada@example.com", verified=False)
        token = service.request_email_verification("ada@example.com")
        service.verify_email(token)
        with pytest.raises(UnauthenticatedError):
            service.verify_email(token)

    def test_expired_token(self, store: AuthStore, service: AuthService, clock: FakeClock) -> None:
        create_user(store, "ada@example.com", verified=False)
        token = service.request_email_verification("ada@example.com")
        clock.advance(24 * 3600)
        with pytest.raises(UnauthenticatedError):
            service.verify_email(token)

    def test_unknown_email_returns_none(self, service: AuthService) -> None:
        assert service.request_email_verification("nobody@example.com") is None

    def test_reset_token_cannot_verify_email(self, store: AuthStore, service: AuthService) -> None:
        user = create_user(store, "ada@example.com", verified=False, password=PASSWORD)
        reset_token = service.request_password_reset("ada@example.com")
        with pytest.raises(UnauthenticatedError):
            service.verify_email(reset_token)
        assert not store.get_user_by_id(user.id).email_verified


class TestPasswordReset:
    def test_reset_changes_password_and_revokes_sessions(self, store: AuthStore, service: AuthService) -> None:
        create_user(store, "ada@example.com", password=PASSWORD)
        first = service.sign_in("ada@example.com", PASSWORD)
        second = service.sign_in("ada@example.com", PASSWORD)

        token = service.request_password_reset("ada@example.com")
        service.reset_password(token, "Brand-New-Pass-7")

        assert store.get_session(first.session_id) is None
        assert store.get_session(second.session_id) is None
        with pytest.raises(UnauthenticatedError):
            service.sign_in("ada@example.com", PASSWORD)
        assert service.sign_in("ada@example.com", "Brand-New-Pass-7").user.email == "ada@example.com"

    def test_weak_new_password_keeps_token(self, store: AuthStore, service: AuthService) -> None:
        create_user(store, "ada@example.com", password=PASSWORD)
        token = service.request_password_reset("ada@example.com")
        with pytest.raises(MalformedError):
            service.reset_password(token, "weak")
        service.reset_password(token, "Brand-New-Pass-7")

    def test_reset_token_expires(self, store: AuthStore, service: AuthService, clock: FakeClock) -> None:
        create_user(store, "ada@example.com", password=PASSWORD)
        token = service.request_password_reset("ada@example.com")
        clock.advance(3600)
        with pytest.raises(UnauthenticatedError):
            service.reset_password(token, "Brand-New-Pass-7")

    def test_verification_token_cannot_reset(self, store: AuthStore, service: AuthService) -> None:
        create_user(store, "ada@example.com", verified=False, password=PASSWORD)
        token = service.request_email_verification("ada@example.com")
        with pytest.raises(UnauthenticatedError):
            service.reset_password(token, "Brand-New-Pass-7")

    def test_unknown_email_returns_none(self, service: AuthService) -> None:
        assert service.request_password_reset("nobody@example.com") is None


class TestOnboarding:
    def test_completes_and_updates_profile(self, store: AuthStore, service: AuthService) -> None:
        user = create_user(store, "ada@example.com", name="Ada")
        updated = service.complete_onboarding(user.id, phone_number="+44 20 7946 0000")
        assert updated.onboarding_completed
        assert updated.name == "Ada"
        assert updated.phone_number == "+44 20 7946 0000"

    def test_unknown_user(self, service: AuthService) -> None:
        with pytest.raises(NotFoundError):
            service.complete_onboarding(999)
