"""
auth/tokens.py -- Credential codec, password hashing, and random token utilities.

Security design decisions:
  JWT: python-jose with HS256. CredentialCodec is constructed with an explicit
       secret (no module-level config read) so tests can run codecs with
       distinct secrets side by side. verify() checks the signature with
       jose.jws BEFORE parsing any claim, then validates the payload against a
       fixed pydantic model and finally compares exp with the injected clock.
       Outcomes are returned as a Rejection, never raised:
         SIGNATURE_INVALID -- signature does not match (tampered / wrong secret),
                              or its segment is not canonical base64url
         MALFORMED         -- not a JWS, or a required claim missing/mistyped
         EXPIRED           -- correctly signed and well-formed, exp has passed

  Refresh tokens: same codec, different fixed claim set {userId, tokenId}.
       Because each claim model requires its own fields, an access token
       presented as a refresh token (or vice versa) decodes as MALFORMED.

  Passwords: bcrypt used directly. Bcrypt is the right choice for low-entropy
       secrets because its cost factor makes brute-force expensive. The
       _DUMMY_HASH constant enables timing equalization in AuthService.sign_in()
       so response time does not reveal whether an email exists [C1].

  Session tokens: secrets.token_hex(32) -- 256 bits, opaque, stored as-is.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import jws, jwt
from jose.exceptions import JWSError, JWSSignatureError
from jose.utils import base64url_decode, base64url_encode
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from auth.errors import Rejection

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

logger = logging.getLogger("clientportal.auth")

_ALGORITHM = "HS256"
_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]+\Z")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _canonical_signature(token: str) -> bool:
    """True unless the token has a signature segment that is not canonical base64url.

    jose decodes base64url leniently: characters outside the alphabet are
    dropped and the trailing padding bits of the last character are ignored,
    so several spellings decode to the same MAC. Only the one spelling that
    re-encodes to itself is accepted. Tokens without three segments are left
    to jws, which reports them as MALFORMED.
    """
    segments = token.split(".")
    if len(segments) != 3:
        return True
    signature = segments[2]
    if not _B64URL_RE.match(signature):
        return False
    try:
        raw = base64url_decode(signature.encode("ascii"))
    except ValueError:
        return False
    return base64url_encode(raw).decode("ascii") == signature


# ---------------------------------------------------------------------------
# Claims -- fixed, exhaustively typed structures
# ---------------------------------------------------------------------------


class TokenSubject(BaseModel):
    """Identity facts embedded in an access token."""

    model_config = ConfigDict(populate_by_name=True, strict=True, frozen=True)

    user_id: int = Field(alias="userId")
    email: str
    is_admin: bool = Field(alias="isAdmin")
    email_verified: bool = Field(alias="emailVerified")

    @classmethod
    def from_user(cls, user: User) -> TokenSubject:
        return cls(
            user_id=user.id,
            email=user.email,
            is_admin=user.is_admin,
            email_verified=user.email_verified,
        )


class TokenClaims(TokenSubject):
    """Verified access token payload: subject plus issue/expiry timestamps (epoch seconds)."""

    iat: int
    exp: int

    @property
    def subject(self) -> TokenSubject:
        return TokenSubject(
            user_id=self.user_id,
            email=self.email,
            is_admin=self.is_admin,
            email_verified=self.email_verified,
        )


class RefreshClaims(BaseModel):
    """Verified refresh token payload. token_id is the Session row id."""

    model_config = ConfigDict(populate_by_name=True, strict=True, frozen=True)

    user_id: int = Field(alias="userId")
    token_id: int = Field(alias="tokenId")
    iat: int
    exp: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # seconds until the access token expires


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class CredentialCodec:
    """Issue and verify signed, time-bounded bearer credentials.

    Pure transform: no I/O. The secret is process-wide configuration handed in
    at construction; rotating it invalidates all outstanding tokens.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        access_ttl: int = 3600,
        refresh_ttl: int = 30 * 24 * 3600,
        algorithm: str = _ALGORITHM,
        clock: Clock = utc_now,
    ) -> None:
        if not secret_key:
            raise ValueError("CredentialCodec requires a non-empty secret_key.")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._clock = clock
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> CredentialCodec:
        return cls(
            settings.secret_key,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            clock=clock,
        )

    def _now(self) -> int:
        return int(self._clock().timestamp())

    def _encode(self, payload: dict) -> str:
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def _decode(self, token: str, model: type[BaseModel]) -> BaseModel | Rejection:
        # Signature first: nothing in the payload is read until it verifies.
        if not _canonical_signature(token):
            return Rejection.SIGNATURE_INVALID
        try:
            raw = jws.verify(token, self._secret_key, algorithms=[self._algorithm])
        except JWSSignatureError:
            return Rejection.SIGNATURE_INVALID
        except JWSError:
            return Rejection.MALFORMED
        try:
            claims = model.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            return Rejection.MALFORMED
        if claims.exp <= self._now():
            return Rejection.EXPIRED
        return claims

    # -- access tokens --------------------------------------------------

    def issue(self, subject: TokenSubject, ttl: int | None = None) -> str:
        """Encode a signed access token for subject, valid for ttl seconds."""
        duration = ttl if ttl is not None else self.access_ttl
        issued_at = self._now()
        claims = TokenClaims(
            user_id=subject.user_id,
            email=subject.email,
            is_admin=subject.is_admin,
            email_verified=subject.email_verified,
            iat=issued_at,
            exp=issued_at + duration,
        )
        return self._encode(claims.model_dump(by_alias=True))

    def verify(self, token: str) -> TokenClaims | Rejection:
        """Return the verified claims, or the Rejection reason. Never raises."""
        return self._decode(token, TokenClaims)

    # -- refresh tokens -------------------------------------------------

    def issue_refresh(self, user_id: int, session_id: int, ttl: int | None = None) -> str:
        duration = ttl if ttl is not None else self.refresh_ttl
        issued_at = self._now()
        claims = RefreshClaims(user_id=user_id, token_id=session_id, iat=issued_at, exp=issued_at + duration)
        return self._encode(claims.model_dump(by_alias=True))

    def verify_refresh(self, token: str) -> RefreshClaims | Rejection:
        return self._decode(token, RefreshClaims)

    def issue_pair(self, user: User, session_id: int) -> TokenPair:
        """Issue the access/refresh pair handed to the client after a login."""
        return TokenPair(
            access_token=self.issue(TokenSubject.from_user(user)),
            refresh_token=self.issue_refresh(user.id, session_id),
            expires_in=self.access_ttl,
        )


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer
    caps password length well below that (max_length on the request model).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load.
_DUMMY_HASH: str = hash_password("clientportal_timing_dummy")


# ---------------------------------------------------------------------------
# Random tokens
# ---------------------------------------------------------------------------

_TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_session_token() -> str:
    """Opaque session token: 32 random bytes as 64 hex characters."""
    return secrets.token_hex(32)


def generate_random_token(length: int = 32) -> str:
    """Alphanumeric single-use token for email verification and password reset links."""
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, *, max_age: int, secure: bool, cookie_name: str = "auth_token") -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    max_age: matches the access token expiry so both expire together.
    """
    response.set_cookie(
        cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )
