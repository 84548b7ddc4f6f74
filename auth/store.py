"""
auth/store.py -- Persistence port and SQLAlchemy Core adapter for identity entities.

Pattern: Repository + Data Mapper.
Store is the port: a typing.Protocol that every backend implements.
SqlStore is the relational adapter; _row_to_* functions are the mappers.
auth/memory_store.py holds the in-memory adapter used by unit tests and
local development. Domain components only ever see the Store protocol, so
a backend is a swappable adapter, not a place where business rules live.

Atomicity:
  consume_token() and rotate_refresh_token() are compare-and-clear /
  compare-and-swap operations. Each runs inside one engine.begin()
  transaction whose FIRST statement is the conditional DELETE, and success is
  decided by its rowcount. A concurrent second caller therefore deletes zero
  rows and fails, instead of succeeding against already-consumed state.

  create_account() writes the account and its profile in one transaction so
  no account can exist without a profile.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Verification and refresh tokens are stored as HMAC digests only.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import (
    Column,
    Float,
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
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateEmail
from auth.models import (
    Account,
    AuditAction,
    AuditEvent,
    EmployeeProfile,
    ProfileStatus,
    Role,
    TokenPurpose,
    VerificationToken,
)

# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


class Store(Protocol):
    """Persistence contract for accounts, profiles, tokens and audit events.

    Implementations must:
      - treat ``email`` as already normalized (callers lower-case it)
      - raise auth.errors.DuplicateEmail from create_account() on an email
        clash, and only then
      - make consume_token() (including its account updates and session
        revocation), rotate_refresh_token() and conditional update_profile()
        atomic
    """

    def ping(self) -> bool: ...

    def create_account(self, account: Account, profile: EmployeeProfile) -> None: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def get_account_by_email(self, email: str) -> Account | None: ...

    def update_account(self, account_id: str, **fields) -> bool: ...

    def get_profile(self, profile_id: str) -> EmployeeProfile | None: ...

    def get_profile_by_account(self, account_id: str) -> EmployeeProfile | None: ...

    def list_profiles(
        self, status: ProfileStatus | None = None, role: Role | None = None
    ) -> list[EmployeeProfile]: ...

    def update_profile(
        self,
        profile_id: str,
        fields: dict,
        expected_status: ProfileStatus | None = None,
        audit: AuditEvent | None = None,
    ) -> bool: ...

    def count_active_admins(self) -> int: ...

    def save_token(self, token: VerificationToken) -> None: ...

    def consume_token(
        self,
        token_hash: str,
        purpose: TokenPurpose,
        now: float,
        account_updates: dict | None = None,
        revoke_sessions: bool = False,
    ) -> str | None: ...

    def add_refresh_token(self, account_id: str, token_hash: str) -> None: ...

    def rotate_refresh_token(self, account_id: str, old_hash: str, new_hash: str) -> bool: ...

    def clear_refresh_tokens(self, account_id: str) -> int: ...

    def list_audit_events(self, profile_id: str) -> list[AuditEvent]: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-case
    Column("password_hash", Text, nullable=False),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_profiles = Table(
    "employee_profiles",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("account_id", String(32), ForeignKey("accounts.id"), nullable=False, unique=True),
    Column("full_name", String(255), nullable=False),
    Column("role", String(20), nullable=False, server_default="employee"),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("department", String(255)),
    Column("position", String(255)),
    Column("reviewed_by", String(32)),
    Column("reviewed_at", String(32)),
    Column("rejection_reason", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(32), ForeignKey("accounts.id"), nullable=False),
    Column("purpose", String(20), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", Float, nullable=False),  # UTC epoch seconds
    Column("created_at", String(32), nullable=False),
    # At most one live token per purpose per account.
    UniqueConstraint("account_id", "purpose", name="uq_verification_tokens_account_purpose"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(32), ForeignKey("accounts.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_audit_events = Table(
    "audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("profile_id", String(32), nullable=False, index=True),
    Column("actor_account_id", String(32), nullable=False),
    Column("action", String(20), nullable=False),
    Column("from_status", String(20), nullable=False),
    Column("to_status", String(20), nullable=False),
    Column("from_role", String(20), nullable=False),
    Column("to_role", String(20), nullable=False),
    Column("reason", Text),
    Column("created_at", String(32), nullable=False),
)

# Columns callers may change through update_account / update_profile.
_ACCOUNT_FIELDS = {"password_hash", "email_verified", "last_login"}
_PROFILE_FIELDS = {
    "full_name",
    "role",
    "status",
    "department",
    "position",
    "reviewed_by",
    "reviewed_at",
    "rejection_reason",
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _checked(fields: dict, allowed: set[str]) -> dict:
    """Reject unknown column names and convert enums/bools for storage.

    Column names come from this whitelist, never from raw user input.
    """
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)!r}")
    values: dict = {}
    for key, value in fields.items():
        if isinstance(value, (Role, ProfileStatus)):
            value = value.value
        elif isinstance(value, bool):
            value = 1 if value else 0
        values[key] = value
    return values


# ---------------------------------------------------------------------------
# Relational adapter
# ---------------------------------------------------------------------------


class SqlStore:
    """SQLAlchemy Core implementation of Store.

    Usage:
        store = SqlStore("sqlite:///staffgate.db")
        store.create_account(account, profile)
        account = store.get_account_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///staffgate.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Cheap liveness probe used by GET /health."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account, profile: EmployeeProfile) -> None:
        """Insert an account and its profile in one transaction.

        Raises DuplicateEmail if the email UNIQUE constraint fires -- the
        signal that a concurrent signup for the same address won the race.
        Any other constraint failure (an id clash, say) propagates as the
        IntegrityError it is.
        """
        now = _now_iso()
        account.created_at = account.updated_at = now
        profile.created_at = profile.updated_at = now
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _accounts.insert().values(
                        id=account.id,
                        email=account.email,
                        password_hash=account.password_hash,
                        email_verified=1 if account.email_verified else 0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.execute(
                    _profiles.insert().values(
                        id=profile.id,
                        account_id=account.id,
                        full_name=profile.full_name,
                        role=profile.role.value,
                        status=profile.status.value,
                        department=profile.department,
                        position=profile.position,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            if self.get_account_by_email(account.email) is None:
                raise
            raise DuplicateEmail() from exc

    def get_account(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
            if row is None:
                return None
            return _row_to_account(row, self._refresh_hashes(conn, row.id))

    def get_account_by_email(self, email: str) -> Account | None:
        """Look up by normalized (lower-case) email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
            if row is None:
                return None
            return _row_to_account(row, self._refresh_hashes(conn, row.id))

    def update_account(self, account_id: str, **fields) -> bool:
        """Update mutable account columns. Returns False if account_id is unknown."""
        values = _checked(fields, _ACCOUNT_FIELDS)
        values["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
        return result.rowcount > 0

    def _refresh_hashes(self, conn, account_id: str) -> frozenset[str]:
        rows = conn.execute(
            select(_refresh_tokens.c.token_hash).where(_refresh_tokens.c.account_id == account_id)
        ).fetchall()
        return frozenset(r.token_hash for r in rows)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, profile_id: str) -> EmployeeProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.id == profile_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def get_profile_by_account(self, account_id: str) -> EmployeeProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.account_id == account_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def list_profiles(self, status: ProfileStatus | None = None, role: Role | None = None) -> list[EmployeeProfile]:
        """Return profiles ordered oldest first, optionally filtered."""
        query = _profiles.select()
        if status is not None:
            query = query.where(_profiles.c.status == status.value)
        if role is not None:
            query = query.where(_profiles.c.role == role.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_profiles.c.created_at, _profiles.c.id)).fetchall()
        return [_row_to_profile(r) for r in rows]

    def update_profile(
        self,
        profile_id: str,
        fields: dict,
        expected_status: ProfileStatus | None = None,
        audit: AuditEvent | None = None,
    ) -> bool:
        """Update a profile, optionally only if it is still in ``expected_status``.

        The status check lives in the UPDATE's WHERE clause, so two admins
        reviewing the same pending profile cannot both succeed. When ``audit``
        is given it is inserted in the same transaction as the change.

        Returns True if a row was updated.
        """
        values = _checked(fields, _PROFILE_FIELDS)
        now = _now_iso()
        values["updated_at"] = now
        condition = _profiles.c.id == profile_id
        if expected_status is not None:
            condition = condition & (_profiles.c.status == expected_status.value)
        with self.engine.begin() as conn:
            result = conn.execute(_profiles.update().where(condition).values(**values))
            if result.rowcount != 1:
                return False
            if audit is not None:
                audit.created_at = now
                inserted = conn.execute(
                    _audit_events.insert().values(
                        profile_id=audit.profile_id,
                        actor_account_id=audit.actor_account_id,
                        action=audit.action.value,
                        from_status=audit.from_status.value,
                        to_status=audit.to_status.value,
                        from_role=audit.from_role.value,
                        to_role=audit.to_role.value,
                        reason=audit.reason,
                        created_at=now,
                    )
                )
                audit.id = inserted.inserted_primary_key[0]
        return True

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_profiles)
                .where((_profiles.c.role == Role.admin.value) & (_profiles.c.status == ProfileStatus.active.value))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def save_token(self, token: VerificationToken) -> None:
        """Store a token, replacing any previous token for the same purpose."""
        with self.engine.begin() as conn:
            conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.account_id == token.account_id)
                    & (_verification_tokens.c.purpose == token.purpose.value)
                )
            )
            conn.execute(
                _verification_tokens.insert().values(
                    account_id=token.account_id,
                    purpose=token.purpose.value,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    created_at=_now_iso(),
                )
            )

    def consume_token(
        self,
        token_hash: str,
        purpose: TokenPurpose,
        now: float,
        account_updates: dict | None = None,
        revoke_sessions: bool = False,
    ) -> str | None:
        """Atomically delete a live token and apply ``account_updates``.

        With ``revoke_sessions`` the account's refresh tokens are deleted in
        the same transaction, so a failed write leaves the token redeemable.

        The preliminary SELECT only learns which account the digest belongs
        to; the conditional DELETE (matching digest, purpose and expiry) is
        the authority. Zero deleted rows means the token was unknown, expired,
        or consumed by a concurrent caller.

        Returns the account id on success, None otherwise.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_verification_tokens.c.id, _verification_tokens.c.account_id).where(
                    (_verification_tokens.c.token_hash == token_hash)
                    & (_verification_tokens.c.purpose == purpose.value)
                )
            ).fetchone()
        if row is None:
            return None

        updates = _checked(account_updates or {}, _ACCOUNT_FIELDS)
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.id == row.id)
                    & (_verification_tokens.c.token_hash == token_hash)
                    & (_verification_tokens.c.expires_at > now)
                )
            )
            if result.rowcount != 1:
                return None
            if updates:
                updates["updated_at"] = _now_iso()
                conn.execute(_accounts.update().where(_accounts.c.id == row.account_id).values(**updates))
            if revoke_sessions:
                conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.account_id == row.account_id))
        return row.account_id

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, account_id: str, token_hash: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _refresh_tokens.insert().values(account_id=account_id, token_hash=token_hash, created_at=_now_iso())
            )

    def rotate_refresh_token(self, account_id: str, old_hash: str, new_hash: str) -> bool:
        """Swap ``old_hash`` for ``new_hash`` if and only if ``old_hash`` is current.

        Returns False (and inserts nothing) when the old token was already
        rotated, revoked, or never issued.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.token_hash == old_hash)
                )
            )
            if result.rowcount != 1:
                return False
            conn.execute(
                _refresh_tokens.insert().values(account_id=account_id, token_hash=new_hash, created_at=_now_iso())
            )
        return True

    def clear_refresh_tokens(self, account_id: str) -> int:
        """Revoke every refresh token for the account. Returns how many were removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.account_id == account_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def list_audit_events(self, profile_id: str) -> list[AuditEvent]:
        """Return the profile's audit events, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_events.select().where(_audit_events.c.profile_id == profile_id).order_by(_audit_events.c.id)
            ).fetchall()
        return [_row_to_audit_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row, refresh_hashes: frozenset[str]) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        refresh_tokens=refresh_hashes,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_profile(row) -> EmployeeProfile:
    return EmployeeProfile(
        id=row.id,
        account_id=row.account_id,
        full_name=row.full_name,
        role=Role(row.role),
        status=ProfileStatus(row.status),
        department=row.department,
        position=row.position,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        rejection_reason=row.rejection_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        profile_id=row.profile_id,
        actor_account_id=row.actor_account_id,
        action=AuditAction(row.action),
        from_status=ProfileStatus(row.from_status),
        to_status=ProfileStatus(row.to_status),
        from_role=Role(row.from_role),
        to_role=Role(row.to_role),
        reason=row.reason,
        created_at=row.created_at,
    )
