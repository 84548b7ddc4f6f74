"""
auth/models.py -- Domain dataclasses for identity and approval entities.

Pattern: Data class (pure data container, zero logic). Stores and the domain
components (credentials, verification, approval, sessions) do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    admin = "admin"
    employee = "employee"


class ProfileStatus(str, Enum):
    pending = "pending"
    active = "active"
    rejected = "rejected"


class TokenPurpose(str, Enum):
    email_verify = "email_verify"
    password_reset = "password_reset"


class AuditAction(str, Enum):
    approve = "approve"
    reject = "reject"
    override = "override"


@dataclass
class Account:
    """Authentication identity: email, password hash and token state.

    email is always stored stripped and lower-cased; lookups normalize the
    same way so uniqueness is case-insensitive.

    refresh_tokens holds HMAC digests of the currently valid refresh tokens,
    never the raw JWTs. Stores populate it on read.
    """

    id: str
    email: str
    password_hash: str
    email_verified: bool = False
    refresh_tokens: frozenset[str] = frozenset()
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""
    last_login: str | None = None


@dataclass
class EmployeeProfile:
    """Organizational identity linked 1:1 to an Account.

    reviewed_by / reviewed_at / rejection_reason are filled in when an
    administrator approves or rejects the profile.
    """

    id: str
    account_id: str
    full_name: str
    role: Role = Role.employee
    status: ProfileStatus = ProfileStatus.pending
    department: str | None = None
    position: str | None = None
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    rejection_reason: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class VerificationToken:
    """A stored single-use token. token_hash is HMAC-SHA256 of the raw token.

    expires_at is a UTC epoch timestamp so stores can compare it in SQL.
    """

    account_id: str
    purpose: TokenPurpose
    token_hash: str
    expires_at: float


@dataclass
class AuditEvent:
    """Immutable record of an administrator changing a profile's role or status.

    Records are never updated or deleted -- only inserted.
    """

    profile_id: str
    actor_account_id: str
    action: AuditAction
    from_status: ProfileStatus
    to_status: ProfileStatus
    from_role: Role
    to_role: Role
    reason: str | None = None
    id: int | None = None
    created_at: str = ""


@dataclass(frozen=True)
class SessionTokens:
    """An access/refresh pair as returned to the client."""

    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    token_type: str = "bearer"


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims of an access token."""

    subject: str  # account id
    email: str
    role: Role


@dataclass
class AuthResult:
    """Outcome of a facade operation that may or may not yield a session.

    tokens is None whenever the caller must not be signed in yet (signup,
    confirmation pending approval, neutral forgot-password responses).
    """

    message: str
    account: Account | None = None
    profile: EmployeeProfile | None = None
    tokens: SessionTokens | None = None
    requires_email_verification: bool = False
