"""
tests/test_identity.py -- Credential extraction and identity resolution.

The resolver must build the Identity from the store, not from the token, so
state changes after issue (deletion, verification, admin flag) take effect on
the very next request.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import FakeClock, create_user

from auth.errors import Rejection, StoreUnavailableError
from auth.identity import Identity, IdentityResolver, extract_credential
from auth.store import AuthStore
from auth.tokens import CredentialCodec, TokenSubject


class TestExtractCredential:
    def test_bearer_header(self) -> None:
        assert extract_credential("Bearer abc.def.ghi", None) == "abc.def.ghi"

    def test_cookie_fallback(self) -> None:
        assert extract_credential(None, "cookie-token") == "cookie-token"

    def test_header_wins_over_cookie(self) -> None:
        assert extract_credential("Bearer from-header", "from-cookie") == "from-header"

    def test_non_bearer_scheme_falls_back_to_cookie(self) -> None:
        assert extract_credential("Basic dXNlcjpwYXNz", "from-cookie") == "from-cookie"

    def test_empty_bearer_falls_back_to_cookie(self) -> None:
        assert extract_credential("Bearer   ", "from-cookie") == "from-cookie"

    def test_nothing_presented(self) -> None:
        assert extract_credential(None, None) is None
        assert extract_credential("", "") is None


class TestIdentityResolver:
    def test_resolves_valid_token(self, store: AuthStore, codec: CredentialCodec) -> None:
        user = create_user(store, "ada@example.com", is_admin=True)
        identity = IdentityResolver(codec, store).resolve(codec.issue(TokenSubject.from_user(user)))
        assert identity == Identity(user_id=user.id, email="ada@example.com", is_admin=True, email_verified=True)

    def test_missing_token_is_unauthenticated(self, store: AuthStore, codec: CredentialCodec) -> None:
        assert IdentityResolver(codec, store).resolve(None) is Rejection.UNAUTHENTICATED
        assert IdentityResolver(codec, store).resolve("") is Rejection.UNAUTHENTICATED

    def test_codec_rejection_is_passed_through(
        self, store: AuthStore, codec: CredentialCodec, clock: FakeClock
    ) -> None:
        user = create_user(store, "ada@example.com")
        token = codec.issue(TokenSubject.from_user(user), ttl=5)
        clock.advance(5)
        assert IdentityResolver(codec, store).resolve(token) is Rejection.EXPIRED
        assert IdentityResolver(codec, store).resolve("junk") is Rejection.MALFORMED

    def test_deleted_user_is_unauthenticated(self, store: AuthStore, codec: CredentialCodec) -> None:
        user = create_user(store, "gone@example.com")
        token = codec.issue(TokenSubject.from_user(user))
        store.delete_user(user.id)
        assert IdentityResolver(codec, store).resolve(token) is Rejection.UNAUTHENTICATED

    def test_store_state_overrides_stale_claims(self, store: AuthStore, codec: CredentialCodec) -> None:
        """Token says unverified, non-admin; the store now says otherwise."""
        user = create_user(store, "ada@example.com", verified=False)
        token = codec.issue(TokenSubject.from_user(user))
        store.mark_email_verified("ada@example.com")
        store.update_user(user.id, is_admin=True)
        identity = IdentityResolver(codec, store).resolve(token)
        assert identity.email_verified is True
        assert identity.is_admin is True

    def test_store_outage_propagates(self, codec: CredentialCodec) -> None:
        """An outage must not be reported as a bad credential."""
        failing_store = MagicMock()
        failing_store.get_user_by_id.side_effect = StoreUnavailableError()
        token = codec.issue(TokenSubject(user_id=1, email="a@b.co", is_admin=False, email_verified=True))
        with pytest.raises(StoreUnavailableError):
            IdentityResolver(codec, failing_store).resolve(token)
