"""
auth/credentials.py -- CredentialStore: account creation and password checks.

Owns the Account entity's identity rules:
  - email normalization (strip + lower-case) and shape validation
  - password policy and bcrypt hashing
  - creation of the Account together with its EmployeeProfile

Timing equalization [C1]: authenticate() always runs one bcrypt comparison,
against the real hash or a dummy one, so response time does not reveal
whether an email is registered. The caller decides what to tell the client.
"""

from __future__ import annotations

import logging
import re
import uuid

from auth.errors import DuplicateEmail, ValidationError
from auth.models import Account, EmployeeProfile, ProfileStatus, Role
from auth.store import Store
from auth.tokens import BCRYPT_MAX_BYTES, burn_dummy_check, hash_password, verify_password
from core.config import Settings

logger = logging.getLogger("staffgate.auth.credentials")

# Deliberately loose: one "@", no whitespace, a dot in the domain part.
# Ownership is proven by the verification email, not by this pattern.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_EMAIL_LENGTH = 254


def normalize_email(email: str) -> str:
    return email.strip().lower()


def new_id() -> str:
    return uuid.uuid4().hex


class CredentialStore:
    def __init__(self, store: Store, settings: Settings) -> None:
        self._store = store
        self._rounds = settings.bcrypt_rounds
        self._min_length = settings.password_min_length

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_email(self, email: str) -> str:
        """Return the normalized email or raise ValidationError."""
        normalized = normalize_email(email)
        if len(normalized) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(normalized):
            raise ValidationError("Please provide a valid email address.")
        return normalized

    def validate_password(self, password: str) -> None:
        """Raise ValidationError if the password does not meet the policy.

        Policy: at least password_min_length characters, at most 72 bytes
        (bcrypt truncates beyond that), at least one letter and one digit.
        """
        if len(password) < self._min_length:
            raise ValidationError(f"Password must be at least {self._min_length} characters long.")
        if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes long.")
        if not any(c.isalpha() for c in password) or not any(c.isdigit() for c in password):
            raise ValidationError("Password must contain at least one letter and one digit.")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(
        self,
        email: str,
        password: str,
        full_name: str,
        role: Role,
        initial_status: ProfileStatus,
        department: str | None = None,
        position: str | None = None,
    ) -> tuple[Account, EmployeeProfile]:
        """Create an Account and its EmployeeProfile atomically.

        Raises ValidationError for bad input and DuplicateEmail when the
        normalized email is already registered. The up-front lookup gives a
        fast answer; the store's UNIQUE constraint settles concurrent signups.
        """
        normalized = self.validate_email(email)
        full_name = full_name.strip()
        if not full_name:
            raise ValidationError("Full name is required.")
        self.validate_password(password)

        if self._store.get_account_by_email(normalized) is not None:
            raise DuplicateEmail()

        account = Account(
            id=new_id(),
            email=normalized,
            password_hash=hash_password(password, self._rounds),
        )
        profile = EmployeeProfile(
            id=new_id(),
            account_id=account.id,
            full_name=full_name,
            role=role,
            status=initial_status,
            department=department,
            position=position,
        )
        self._store.create_account(account, profile)
        logger.info("Account created (account_id=%s role=%s status=%s)", account.id, role.value, initial_status.value)
        return account, profile

    def authenticate(self, email: str, candidate: str) -> Account | None:
        """Return the Account when the password matches, None on any failure."""
        account = self._store.get_account_by_email(normalize_email(email))
        if account is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            burn_dummy_check(candidate)
            return None
        if not verify_password(candidate, account.password_hash):
            return None
        return account

    def verify_password(self, email: str, candidate: str) -> bool:
        return self.authenticate(email, candidate) is not None

    def hash_new_password(self, new_password: str) -> str:
        """Validate against the policy and return the bcrypt hash."""
        self.validate_password(new_password)
        return hash_password(new_password, self._rounds)

    def set_password(self, account_id: str, new_password: str) -> None:
        """Validate, rehash and overwrite. Does not revoke sessions by itself."""
        self._store.update_account(account_id, password_hash=self.hash_new_password(new_password))
        logger.info("Password changed (account_id=%s)", account_id)
