"""
auth/memory_store.py -- In-memory implementation of the Store protocol.

Useful for unit tests and for running the API locally without a database.
NOT FOR PRODUCTION USE -- data is lost on restart.

Every public method runs under one lock, which gives the same atomicity the
SQL adapter gets from transactions: consume_token() and
rotate_refresh_token() are compare-and-clear / compare-and-swap, and
create_account() writes account and profile together.

Returned entities are copies, so callers cannot mutate stored state by
accident.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock

from auth.errors import DuplicateEmail
from auth.models import (
    Account,
    AuditEvent,
    EmployeeProfile,
    ProfileStatus,
    Role,
    TokenPurpose,
    VerificationToken,
)
from auth.store import _ACCOUNT_FIELDS, _PROFILE_FIELDS


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._accounts: dict[str, Account] = {}
        self._email_index: dict[str, str] = {}  # email -> account id
        self._profiles: dict[str, EmployeeProfile] = {}
        self._tokens: dict[tuple[str, TokenPurpose], VerificationToken] = {}
        self._refresh: dict[str, set[str]] = {}  # account id -> digests
        self._audit: list[AuditEvent] = []

    def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account, profile: EmployeeProfile) -> None:
        with self._lock:
            if account.email in self._email_index:
                raise DuplicateEmail()
            if account.id in self._accounts or profile.id in self._profiles:
                raise ValueError(f"Account {account.id} or profile {profile.id} already exists")
            now = _now_iso()
            account.created_at = account.updated_at = now
            profile.created_at = profile.updated_at = now
            self._accounts[account.id] = replace(account, refresh_tokens=frozenset())
            self._email_index[account.email] = account.id
            self._profiles[profile.id] = replace(profile, account_id=account.id)
            self._refresh[account.id] = set()

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            return self._account_copy(account_id)

    def get_account_by_email(self, email: str) -> Account | None:
        with self._lock:
            account_id = self._email_index.get(email)
            return self._account_copy(account_id) if account_id else None

    def update_account(self, account_id: str, **fields) -> bool:
        _reject_unknown(fields, _ACCOUNT_FIELDS)
        with self._lock:
            if account_id not in self._accounts:
                return False
            self._apply_account_updates(account_id, fields)
            return True

    def _account_copy(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        return replace(account, refresh_tokens=frozenset(self._refresh.get(account_id, ())))

    def _apply_account_updates(self, account_id: str, fields: dict) -> None:
        self._accounts[account_id] = replace(self._accounts[account_id], updated_at=_now_iso(), **fields)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, profile_id: str) -> EmployeeProfile | None:
        with self._lock:
            profile = self._profiles.get(profile_id)
            return replace(profile) if profile else None

    def get_profile_by_account(self, account_id: str) -> EmployeeProfile | None:
        with self._lock:
            for profile in self._profiles.values():
                if profile.account_id == account_id:
                    return replace(profile)
            return None

    def list_profiles(self, status: ProfileStatus | None = None, role: Role | None = None) -> list[EmployeeProfile]:
        with self._lock:
            profiles = [
                replace(p)
                for p in self._profiles.values()
                if (status is None or p.status == status) and (role is None or p.role == role)
            ]
        return sorted(profiles, key=lambda p: (p.created_at, p.id))

    def update_profile(
        self,
        profile_id: str,
        fields: dict,
        expected_status: ProfileStatus | None = None,
        audit: AuditEvent | None = None,
    ) -> bool:
        _reject_unknown(fields, _PROFILE_FIELDS)
        with self._lock:
            current = self._profiles.get(profile_id)
            if current is None:
                return False
            if expected_status is not None and current.status != expected_status:
                return False
            now = _now_iso()
            self._profiles[profile_id] = replace(current, updated_at=now, **fields)
            if audit is not None:
                audit.id = len(self._audit) + 1
                audit.created_at = now
                self._audit.append(replace(audit))
            return True

    def count_active_admins(self) -> int:
        with self._lock:
            return sum(
                1 for p in self._profiles.values() if p.role == Role.admin and p.status == ProfileStatus.active
            )

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def save_token(self, token: VerificationToken) -> None:
        with self._lock:
            self._tokens[(token.account_id, token.purpose)] = replace(token)

    def consume_token(
        self,
        token_hash: str,
        purpose: TokenPurpose,
        now: float,
        account_updates: dict | None = None,
        revoke_sessions: bool = False,
    ) -> str | None:
        _reject_unknown(account_updates or {}, _ACCOUNT_FIELDS)
        with self._lock:
            for key, stored in self._tokens.items():
                if stored.token_hash == token_hash and stored.purpose == purpose:
                    break
            else:
                return None
            if stored.expires_at <= now:
                return None
            del self._tokens[key]
            if account_updates:
                self._apply_account_updates(stored.account_id, account_updates)
            if revoke_sessions:
                self._refresh[stored.account_id] = set()
            return stored.account_id

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, account_id: str, token_hash: str) -> None:
        with self._lock:
            self._refresh.setdefault(account_id, set()).add(token_hash)

    def rotate_refresh_token(self, account_id: str, old_hash: str, new_hash: str) -> bool:
        with self._lock:
            current = self._refresh.get(account_id, set())
            if old_hash not in current:
                return False
            current.discard(old_hash)
            current.add(new_hash)
            return True

    def clear_refresh_tokens(self, account_id: str) -> int:
        with self._lock:
            removed = len(self._refresh.get(account_id, ()))
            self._refresh[account_id] = set()
            return removed

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def list_audit_events(self, profile_id: str) -> list[AuditEvent]:
        with self._lock:
            return [replace(e) for e in self._audit if e.profile_id == profile_id]

    def close(self) -> None:
        pass


def _reject_unknown(fields: dict, allowed: set[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)!r}")
