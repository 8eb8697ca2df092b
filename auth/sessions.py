"""
auth/sessions.py -- Session rows and the credential pairs minted for them.

Every successful login (password or OAuth) ends here: a Session row with an
opaque random token and a fixed expiry, plus an access/refresh token pair whose
refresh half points at that row. The refresh path reads the row back, so
deleting it (sign-out, password reset) revokes the refresh token even though
the JWT itself is still correctly signed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.errors import Rejection, UnauthenticatedError
from auth.models import Session, User
from auth.store import AuthStore
from auth.tokens import Clock, CredentialCodec, TokenPair, generate_session_token, utc_now

logger = logging.getLogger("clientportal.auth")

DEFAULT_SESSION_TTL = 7 * 24 * 3600


class SessionIssuer:
    def __init__(
        self,
        store: AuthStore,
        codec: CredentialCodec,
        *,
        session_ttl: int = DEFAULT_SESSION_TTL,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._codec = codec
        self._session_ttl = session_ttl
        self._clock = clock

    def _expiry(self) -> str:
        return (self._clock() + timedelta(seconds=self._session_ttl)).isoformat()

    def start(self, user: User) -> tuple[Session, TokenPair]:
        """Create a session for user and issue its token pair."""
        session = Session(user_id=user.id, token=generate_session_token(), expires_at=self._expiry())
        session.id = self._store.create_session(session)
        logger.info("Session %s started for user_id=%s", session.id, user.id)
        return session, self._codec.issue_pair(user, session.id)

    def refresh(self, refresh_token: str) -> tuple[User, TokenPair]:
        """Exchange a refresh token for a new pair and slide the session expiry.

        Raises UnauthenticatedError if the token is invalid, the session was
        revoked or has expired, or the user no longer exists.
        """
        claims = self._codec.verify_refresh(refresh_token)
        if isinstance(claims, Rejection):
            raise UnauthenticatedError("Invalid refresh token.", detail=claims.value)
        session = self._store.get_session(claims.token_id)
        if session is None or session.user_id != claims.user_id:
            raise UnauthenticatedError("Session expired.")
        if datetime.fromisoformat(session.expires_at) <= self._clock():
            raise UnauthenticatedError("Session expired.")
        user = self._store.get_user_by_id(session.user_id)
        if user is None:
            raise UnauthenticatedError("Session expired.")
        self._store.extend_session(session.id, self._expiry())
        return user, self._codec.issue_pair(user, session.id)

    def end(self, session_id: int) -> None:
        """Delete a session. Idempotent: an already-deleted session is not an error."""
        if not self._store.delete_session(session_id):
            logger.debug("Session %s already ended", session_id)
