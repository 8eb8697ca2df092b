"""
tests/test_tokens.py -- Unit tests for the credential codec and password/token helpers.

Coverage:
  - issue/verify round trip before expiry; EXPIRED at and after exp
  - any single-character change to the signature segment -> SIGNATURE_INVALID,
    including non-alphabet characters and the padding bits of the last one
  - different secret -> SIGNATURE_INVALID; garbage and missing claims -> MALFORMED
  - access and refresh tokens are not interchangeable
  - empty secret refused at construction
  - bcrypt hashing and random token shapes
"""

from __future__ import annotations

import string

import pytest
from conftest import TEST_SECRET, FakeClock
from jose import jwt

from auth.errors import Rejection
from auth.tokens import (
    CredentialCodec,
    RefreshClaims,
    TokenClaims,
    TokenSubject,
    generate_random_token,
    generate_session_token,
    hash_password,
    verify_password,
)

SUBJECT = TokenSubject(user_id=7, email="ada@example.com", is_admin=False, email_verified=True)


_B64URL_ALPHABET = string.ascii_letters + string.digits + "-_"


def _with_signature(token: str, signature: str) -> str:
    header, payload, _ = token.split(".")
    return ".".join([header, payload, signature])


def _flip_signature(token: str, position: int = 0) -> str:
    """Replace one signature character with the next letter of the base64url alphabet."""
    signature = token.split(".")[2]
    current = _B64URL_ALPHABET.index(signature[position])
    replacement = _B64URL_ALPHABET[(current + 1) % len(_B64URL_ALPHABET)]
    return _with_signature(token, signature[:position] + replacement + signature[position + 1 :])


class TestCodecRoundTrip:
    def test_verify_returns_issued_subject(self, codec: CredentialCodec) -> None:
        claims = codec.verify(codec.issue(SUBJECT))
        assert isinstance(claims, TokenClaims)
        assert claims.subject == SUBJECT

    def test_claims_use_wire_names(self, codec: CredentialCodec) -> None:
        """The payload carries userId/isAdmin/emailVerified, not the Python field names."""
        raw = jwt.get_unverified_claims(codec.issue(SUBJECT))
        assert set(raw) == {"userId", "email", "isAdmin", "emailVerified", "iat", "exp"}

    def test_valid_until_ttl_then_expired(self, codec: CredentialCodec, clock: FakeClock) -> None:
        token = codec.issue(SUBJECT, ttl=60)
        clock.advance(59)
        assert isinstance(codec.verify(token), TokenClaims)
        clock.advance(1)
        assert codec.verify(token) is Rejection.EXPIRED

    def test_default_ttl_is_access_ttl(self, clock: FakeClock) -> None:
        codec = CredentialCodec(TEST_SECRET, access_ttl=120, clock=clock)
        claims = codec.verify(codec.issue(SUBJECT))
        assert claims.exp - claims.iat == 120


class TestCodecRejections:
    def test_every_single_character_substitution_in_signature(self, codec: CredentialCodec) -> None:
        """Any other alphabet character at any signature position is rejected, including
        the last position, whose low bits are not part of the decoded MAC."""
        token = codec.issue(SUBJECT)
        signature = token.split(".")[2]
        accepted = []
        for position, original in enumerate(signature):
            for candidate in _B64URL_ALPHABET:
                if candidate == original:
                    continue
                tampered = _with_signature(token, signature[:position] + candidate + signature[position + 1 :])
                if codec.verify(tampered) is not Rejection.SIGNATURE_INVALID:
                    accepted.append((position, candidate))
        assert accepted == []

    @pytest.mark.parametrize("junk", ["!", "*", "=", " ", "/", "+"])
    def test_non_alphabet_signature_character_is_signature_invalid(self, codec: CredentialCodec, junk: str) -> None:
        token = codec.issue(SUBJECT)
        signature = token.split(".")[2]
        assert codec.verify(_with_signature(token, junk + signature[1:])) is Rejection.SIGNATURE_INVALID
        assert codec.verify(_with_signature(token, signature + junk)) is Rejection.SIGNATURE_INVALID

    def test_empty_signature_segment(self, codec: CredentialCodec) -> None:
        assert codec.verify(_with_signature(codec.issue(SUBJECT), "")) is Rejection.SIGNATURE_INVALID

    def test_tampered_refresh_token_last_character(self, codec: CredentialCodec) -> None:
        token = codec.issue_refresh(7, 42)
        last = len(token.split(".")[2]) - 1
        assert codec.verify_refresh(_flip_signature(token, last)) is Rejection.SIGNATURE_INVALID

    def test_other_secret(self, codec: CredentialCodec, clock: FakeClock) -> None:
        other = CredentialCodec("another-secret-key-that-is-32-characters!", clock=clock)
        assert codec.verify(other.issue(SUBJECT)) is Rejection.SIGNATURE_INVALID

    def test_expired_and_tampered_reports_signature(self, codec: CredentialCodec, clock: FakeClock) -> None:
        """Signature is checked before expiry, so a forged expired token is not reported as merely expired."""
        token = _flip_signature(codec.issue(SUBJECT, ttl=1))
        clock.advance(10)
        assert codec.verify(token) is Rejection.SIGNATURE_INVALID

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c.d", "....."])
    def test_garbage_is_malformed(self, codec: CredentialCodec, garbage: str) -> None:
        assert codec.verify(garbage) is Rejection.MALFORMED

    def test_missing_claim_is_malformed(self, codec: CredentialCodec) -> None:
        token = jwt.encode({"userId": 1, "iat": 0, "exp": 9999999999}, TEST_SECRET, algorithm="HS256")
        assert codec.verify(token) is Rejection.MALFORMED

    def test_wrongly_typed_claim_is_malformed(self, codec: CredentialCodec) -> None:
        payload = {
            "userId": "1",
            "email": "a@b.co",
            "isAdmin": False,
            "emailVerified": True,
            "iat": 0,
            "exp": 9999999999,
        }
        assert codec.verify(jwt.encode(payload, TEST_SECRET, algorithm="HS256")) is Rejection.MALFORMED

    def test_empty_secret_refused(self) -> None:
        with pytest.raises(ValueError):
            CredentialCodec("")


class TestRefreshTokens:
    def test_refresh_round_trip(self, codec: CredentialCodec) -> None:
        claims = codec.verify_refresh(codec.issue_refresh(7, 42))
        assert isinstance(claims, RefreshClaims)
        assert (claims.user_id, claims.token_id) == (7, 42)

    def test_refresh_expires(self, codec: CredentialCodec, clock: FakeClock) -> None:
        token = codec.issue_refresh(7, 42, ttl=30)
        clock.advance(30)
        assert codec.verify_refresh(token) is Rejection.EXPIRED

    def test_access_token_is_not_a_refresh_token(self, codec: CredentialCodec) -> None:
        assert codec.verify_refresh(codec.issue(SUBJECT)) is Rejection.MALFORMED

    def test_refresh_token_is_not_an_access_token(self, codec: CredentialCodec) -> None:
        assert codec.verify(codec.issue_refresh(7, 42)) is Rejection.MALFORMED


class TestPasswordsAndRandomTokens:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("s3cret-Pass")
        assert hashed != "s3cret-Pass"
        assert verify_password("s3cret-Pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_verify_against_garbage_hash_is_false(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_session_tokens_are_hex_and_unique(self) -> None:
        tokens = {generate_session_token() for _ in range(50)}
        assert len(tokens) == 50
        assert all(len(t) == 64 and int(t, 16) >= 0 for t in tokens)

    def test_random_token_length_and_alphabet(self) -> None:
        token = generate_random_token(48)
        assert len(token) == 48
        assert token.isalnum()
