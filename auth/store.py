"""
auth/store.py -- SQLAlchemy Core persistence layer for identity and tenancy entities.

Pattern: Repository + Data Mapper.
AuthStore is the repository; the _row_to_* functions are the mappers.
Service and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Uniqueness is enforced by the database, not by check-then-insert in code:
  users.email                                  (stored lower-cased)
  external_accounts(provider, provider_account_id)
  sessions.token, api_keys.key_hash
  organization_members(organization_id, user_id)
  billing_accounts.organization_id
Callers that race on creation catch sqlalchemy.exc.IntegrityError and
re-resolve (see auth/linking.py).

Connectivity failures (sqlalchemy OperationalError) are translated to
StoreUnavailableError in _connect()/_begin() so that callers can tell an
outage apart from "no such row".

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from auth.errors import StoreUnavailableError
from auth.models import (
    ApiKey,
    BillingAccount,
    ExternalAccount,
    Organization,
    OrganizationMember,
    Session,
    User,
    Verification,
)

logger = logging.getLogger("clientportal.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("name", String(255)),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("email_verified_at", String(32)),  # NULL = unverified
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("image", Text),
    Column("phone_number", String(32)),
    Column("onboarding_completed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_external_accounts = Table(
    "external_accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("access_token_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_external_accounts_provider_account"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_verifications = Table(
    "verifications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False),
    Column("value", String(128), nullable=False, unique=True),
    Column("purpose", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_organizations = Table(
    "organizations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(100), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_billing_accounts = Table(
    "billing_accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "organization_id",
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("status", String(20), nullable=False, server_default="ACTIVE"),
)

_organization_members = Table(
    "organization_members",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role", String(20), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("organization_id", "user_id", name="uq_organization_members_org_user"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
    Column("created_by", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("key_prefix", String(12), nullable=False),  # first 12 chars, display only
    Column("scopes", Text, nullable=False, server_default="[]"),  # JSON list
    Column("rate_limit", Integer, nullable=False, server_default="1000"),
    Column("expires_at", String(32)),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


# ---------------------------------------------------------------------------
# SQLite connection pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes the
    ON DELETE CASCADE clauses above take effect.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, sessions, external accounts, organizations and API keys.

    Usage:
        store = AuthStore("sqlite:///portal.db")
        user_id = store.create_user(User(email="a@x.com"))
        user = store.get_user_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///clientportal.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Yield a connection; callers commit explicitly."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except OperationalError as exc:
            logger.error("Auth store unavailable: %s", exc.orig)
            raise StoreUnavailableError() from exc

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        """Yield a connection inside one transaction; commit on success, roll back on error."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except OperationalError as exc:
            logger.error("Auth store unavailable: %s", exc.orig)
            raise StoreUnavailableError() from exc

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self._begin() as conn:
            return _insert_user(conn, user)

    def get_user_by_id(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup (emails are stored lower-cased)."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable user fields. Returns False if user_id was not found.

        Boolean fields (is_admin, onboarding_completed) are converted to 0/1.
        """
        for flag in ("is_admin", "onboarding_completed"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self._begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def mark_email_verified(self, email: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.email == normalize_email(email)).values(email_verified_at=_now_iso())
            )
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Hard delete. Sessions, external accounts and memberships cascade."""
        with self._begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # External accounts
    # ------------------------------------------------------------------

    def get_external_account(self, provider: str, provider_account_id: str) -> ExternalAccount | None:
        with self._connect() as conn:
            row = conn.execute(
                _external_accounts.select().where(
                    (_external_accounts.c.provider == provider)
                    & (_external_accounts.c.provider_account_id == provider_account_id)
                )
            ).fetchone()
        return _row_to_external_account(row) if row is not None else None

    def list_external_accounts(self, user_id: int) -> list[ExternalAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                _external_accounts.select()
                .where(_external_accounts.c.user_id == user_id)
                .order_by(_external_accounts.c.id)
            ).fetchall()
        return [_row_to_external_account(r) for r in rows]

    def create_external_account(self, account: ExternalAccount) -> int:
        """Link a provider identity to an existing user.

        Raises IntegrityError if (provider, provider_account_id) is already linked.
        """
        with self._begin() as conn:
            return _insert_external_account(conn, account)

    def create_user_with_external_account(self, user: User, account: ExternalAccount) -> tuple[int, int]:
        """Create a user and its first external account in one transaction.

        Either both rows exist afterwards or neither does. Raises IntegrityError
        when a concurrent request already created the email or the provider pair.
        """
        with self._begin() as conn:
            user_id = _insert_user(conn, user)
            account.user_id = user_id
            account_id = _insert_external_account(conn, account)
        return user_id, account_id

    def update_external_account_tokens(
        self,
        account_id: int,
        access_token: str | None,
        refresh_token: str | None,
        access_token_expires_at: str | None,
    ) -> None:
        with self._begin() as conn:
            conn.execute(
                _external_accounts.update()
                .where(_external_accounts.c.id == account_id)
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    access_token_expires_at=access_token_expires_at,
                    updated_at=_now_iso(),
                )
            )

    def delete_external_account(self, account_id: int) -> bool:
        with self._begin() as conn:
            result = conn.execute(_external_accounts.delete().where(_external_accounts.c.id == account_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token=session.token,
                    expires_at=session.expires_at,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_session(self, session_id: int) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session_by_token(self, token: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def extend_session(self, session_id: int, expires_at: str) -> None:
        with self._begin() as conn:
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(expires_at=expires_at))

    def delete_session(self, session_id: int) -> bool:
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int) -> int:
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Verifications (email confirmation, password reset)
    # ------------------------------------------------------------------

    def create_verification(self, verification: Verification) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _verifications.insert().values(
                    identifier=normalize_email(verification.identifier),
                    value=verification.value,
                    purpose=verification.purpose,
                    expires_at=verification.expires_at,
                )
            )
            return result.inserted_primary_key[0]

    def get_verification(self, value: str, purpose: str) -> Verification | None:
        """Look up a verification token by value and purpose. Expiry is the caller's check."""
        with self._connect() as conn:
            row = conn.execute(
                _verifications.select().where(
                    (_verifications.c.value == value) & (_verifications.c.purpose == purpose)
                )
            ).fetchone()
        return _row_to_verification(row) if row is not None else None

    def delete_verification(self, verification_id: int) -> bool:
        with self._begin() as conn:
            result = conn.execute(_verifications.delete().where(_verifications.c.id == verification_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Organizations and billing
    # ------------------------------------------------------------------

    def create_organization(
        self,
        organization: Organization,
        billing_status: str = "ACTIVE",
        owner_id: int | None = None,
        owner_role: str = "OWNER",
    ) -> int:
        """Insert an organization together with its one-to-one billing account.

        With owner_id, the first membership row is written in the same
        transaction. Raises IntegrityError if the slug is taken.
        """
        now = _now_iso()
        with self._begin() as conn:
            result = conn.execute(
                _organizations.insert().values(
                    name=organization.name,
                    slug=organization.slug,
                    created_at=now,
                )
            )
            org_id = result.inserted_primary_key[0]
            conn.execute(_billing_accounts.insert().values(organization_id=org_id, status=billing_status))
            if owner_id is not None:
                conn.execute(
                    _organization_members.insert().values(
                        organization_id=org_id,
                        user_id=owner_id,
                        role=owner_role,
                        created_at=now,
                    )
                )
        return org_id

    def get_organization(self, organization_id: int) -> Organization | None:
        with self._connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == organization_id)).fetchone()
        if row is None:
            return None
        return Organization(id=row.id, name=row.name, slug=row.slug, created_at=row.created_at)

    def get_billing_account(self, organization_id: int) -> BillingAccount | None:
        with self._connect() as conn:
            row = conn.execute(
                _billing_accounts.select().where(_billing_accounts.c.organization_id == organization_id)
            ).fetchone()
        if row is None:
            return None
        return BillingAccount(id=row.id, organization_id=row.organization_id, status=row.status)

    def set_billing_status(self, organization_id: int, status: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(
                _billing_accounts.update()
                .where(_billing_accounts.c.organization_id == organization_id)
                .values(status=status)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Organization membership
    # ------------------------------------------------------------------

    def add_member(self, member: OrganizationMember) -> int:
        """Raises IntegrityError if the user is already a member of the organization."""
        with self._begin() as conn:
            result = conn.execute(
                _organization_members.insert().values(
                    organization_id=member.organization_id,
                    user_id=member.user_id,
                    role=member.role,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_membership(self, organization_id: int, user_id: int) -> OrganizationMember | None:
        with self._connect() as conn:
            row = conn.execute(
                _organization_members.select().where(
                    (_organization_members.c.organization_id == organization_id)
                    & (_organization_members.c.user_id == user_id)
                )
            ).fetchone()
        return _row_to_member(row) if row is not None else None

    def list_members(self, organization_id: int) -> list[OrganizationMember]:
        with self._connect() as conn:
            rows = conn.execute(
                _organization_members.select()
                .where(_organization_members.c.organization_id == organization_id)
                .order_by(_organization_members.c.id)
            ).fetchall()
        return [_row_to_member(r) for r in rows]

    def list_user_memberships(self, user_id: int) -> list[OrganizationMember]:
        """Every organization membership of user_id, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _organization_members.select()
                .where(_organization_members.c.user_id == user_id)
                .order_by(_organization_members.c.id)
            ).fetchall()
        return [_row_to_member(r) for r in rows]

    def update_member_role(
        self, organization_id: int, user_id: int, role: str, *, retain_role: str | None = None
    ) -> bool:
        """Set a member's role in one transaction.

        With retain_role, the change is refused when it would leave the
        organization with no member holding retain_role. The organization row
        is locked first so concurrent changes are serialized. Returns False
        when the member does not exist or the change was refused.
        """
        member = (_organization_members.c.organization_id == organization_id) & (
            _organization_members.c.user_id == user_id
        )
        with self._begin() as conn:
            conn.execute(
                select(_organizations.c.id).where(_organizations.c.id == organization_id).with_for_update()
            )
            condition = member
            if retain_role is not None and role != retain_role:
                holders = _organization_members.alias("holders")
                remaining = (
                    select(func.count())
                    .select_from(holders)
                    .where((holders.c.organization_id == organization_id) & (holders.c.role == retain_role))
                    .scalar_subquery()
                )
                condition = member & ((_organization_members.c.role != retain_role) | (remaining > 1))
            result = conn.execute(_organization_members.update().where(condition).values(role=role))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    organization_id=api_key.organization_id,
                    created_by=api_key.created_by,
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    scopes=json.dumps(api_key.scopes),
                    rate_limit=api_key.rate_limit,
                    expires_at=api_key.expires_at,
                    created_at=_now_iso(),
                    is_active=1,
                )
            )
            return result.inserted_primary_key[0]

    def get_api_key(self, key_id: int) -> ApiKey | None:
        with self._connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def find_api_key_for_validation(self, key_hash: str) -> tuple[ApiKey, str | None] | None:
        """Return (key, billing_status) for a key hash in one round trip.

        Active/expiry/billing decisions are made by the caller; this method
        returns inactive keys too so the caller can log why a key was refused.
        billing_status is None when the organization has no billing account.
        """
        query = (
            select(_api_keys, _billing_accounts.c.status.label("billing_status"))
            .select_from(
                _api_keys.outerjoin(
                    _billing_accounts,
                    _billing_accounts.c.organization_id == _api_keys.c.organization_id,
                )
            )
            .where(_api_keys.c.key_hash == key_hash)
        )
        with self._connect() as conn:
            row = conn.execute(query).fetchone()
        if row is None:
            return None
        return _row_to_api_key(row), row.billing_status

    def list_api_keys(self, organization_id: int) -> list[ApiKey]:
        """Return the active keys of an organization, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where((_api_keys.c.organization_id == organization_id) & (_api_keys.c.is_active == 1))
                .order_by(_api_keys.c.id.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def update_api_key_last_used(self, key_id: int) -> None:
        with self._begin() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used_at=_now_iso()))

    def deactivate_api_key(self, key_id: int, organization_id: int) -> bool:
        """Deactivate a key. organization_id is part of the WHERE clause (IDOR guard).

        Returns False if the key does not exist or belongs to another organization.
        """
        with self._begin() as conn:
            result = conn.execute(
                _api_keys.update()
                .where((_api_keys.c.id == key_id) & (_api_keys.c.organization_id == organization_id))
                .values(is_active=0)
            )
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by the health endpoint."""
        try:
            with self._connect() as conn:
                conn.execute(select(1))
        except StoreUnavailableError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Insert helpers shared by single and multi-row transactions
# ---------------------------------------------------------------------------


def _insert_user(conn: Connection, user: User) -> int:
    result = conn.execute(
        _users.insert().values(
            email=normalize_email(user.email),
            name=user.name,
            hashed_password=user.hashed_password,
            email_verified_at=user.email_verified_at,
            is_admin=1 if user.is_admin else 0,
            image=user.image,
            phone_number=user.phone_number,
            onboarding_completed=1 if user.onboarding_completed else 0,
            created_at=_now_iso(),
        )
    )
    return result.inserted_primary_key[0]


def _insert_external_account(conn: Connection, account: ExternalAccount) -> int:
    now = _now_iso()
    result = conn.execute(
        _external_accounts.insert().values(
            user_id=account.user_id,
            provider=account.provider,
            provider_account_id=account.provider_account_id,
            access_token=account.access_token,
            refresh_token=account.refresh_token,
            access_token_expires_at=account.access_token_expires_at,
            created_at=now,
            updated_at=now,
        )
    )
    return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        email_verified_at=row.email_verified_at,
        is_admin=bool(row.is_admin),
        image=row.image,
        phone_number=row.phone_number,
        onboarding_completed=bool(row.onboarding_completed),
        created_at=row.created_at,
    )


def _row_to_external_account(row) -> ExternalAccount:
    return ExternalAccount(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        access_token_expires_at=row.access_token_expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_verification(row) -> Verification:
    return Verification(
        id=row.id,
        identifier=row.identifier,
        value=row.value,
        purpose=row.purpose,
        expires_at=row.expires_at,
    )


def _row_to_member(row) -> OrganizationMember:
    return OrganizationMember(
        id=row.id,
        organization_id=row.organization_id,
        user_id=row.user_id,
        role=row.role,
        created_at=row.created_at,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        organization_id=row.organization_id,
        created_by=row.created_by,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        scopes=json.loads(row.scopes or "[]"),
        rate_limit=row.rate_limit,
        expires_at=row.expires_at,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
