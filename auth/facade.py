"""
auth/facade.py -- AuthFacade: the user-facing identity operations.

This is the only component the HTTP layer and the CLI talk to. It orchestrates:

  CredentialStore          -- who the caller is (password checks, creation)
  VerificationTokenManager -- single-use links (email confirmation, reset)
  ApprovalGate             -- whether the caller may log in yet
  SessionIssuer            -- access/refresh pairs
  NotificationDispatcher   -- outbound email, always fire-and-forget

Every email is dispatched after the state change it describes has been
committed; a failed send is logged by the dispatcher and never reaches the
caller.

Enumeration resistance:
  - sign_in returns the same InvalidCredentials for an unknown email and a
    wrong password, and the timing is equalized in CredentialStore [C1].
  - forgot_password always returns the same message.
  - resend_confirmation does report an unknown email (NotFound). That endpoint
    is rate limited instead.

Storage failures (SQLAlchemyError) are logged here and re-raised as Internal
so the HTTP layer never leaks driver messages.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from auth import notifier as templates
from auth.approval import ApprovalGate
from auth.credentials import CredentialStore
from auth.errors import Internal, InvalidCredentials, NotFound, Unauthorized, ValidationError
from auth.models import (
    Account,
    AuditEvent,
    AuthResult,
    EmployeeProfile,
    ProfileStatus,
    Role,
    SessionTokens,
    TokenPurpose,
)
from auth.notifier import NotificationDispatcher
from auth.sessions import SessionIssuer
from auth.store import Store
from auth.verification import VerificationTokenManager, utc_now
from core.config import Settings

logger = logging.getLogger("staffgate.auth.facade")

SIGNUP_MESSAGE = "Account created. Please check your inbox to verify your email."
FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a password reset link has been sent."


def _storage_guard(method: Callable) -> Callable:
    """Translate storage driver errors into Internal after logging them."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("Storage failure in %s", method.__name__)
            raise Internal() from exc

    return wrapper


class AuthFacade:
    """Identity and approval operations.

    Usage:
        facade = AuthFacade(store, settings, dispatcher)
        facade.sign_up("a@x.com", "hunter2hunter2", "Ada Lovelace")
        result = facade.sign_in("a@x.com", "hunter2hunter2")
        result.tokens.access_token
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher
        self.credentials = CredentialStore(store, settings)
        self.tokens = VerificationTokenManager(store, settings, clock)
        self.gate = ApprovalGate(store, settings)
        self.sessions = SessionIssuer(store, settings, clock, can_login=self.gate.can_login)
        self._clock = clock
        self._frontend = settings.frontend_url.rstrip("/")

    # ------------------------------------------------------------------
    # Sign-up and email confirmation
    # ------------------------------------------------------------------

    @_storage_guard
    def sign_up(
        self,
        email: str,
        password: str,
        full_name: str,
        role: Role = Role.employee,
        department: str | None = None,
        position: str | None = None,
    ) -> AuthResult:
        """Create an account and profile, then send the confirmation email.

        Never returns tokens: the caller must prove mailbox ownership first.
        """
        status = self.gate.initial_status(role)
        account, profile = self.credentials.create(
            email, password, full_name, role, status, department=department, position=position
        )
        self._send_confirmation(account, profile)
        if profile.status == ProfileStatus.pending:
            self._notify_admins(account, profile)
        return AuthResult(
            message=SIGNUP_MESSAGE,
            account=account,
            profile=profile,
            requires_email_verification=True,
        )

    @_storage_guard
    def confirm_email(self, token: str) -> AuthResult:
        """Redeem an email_verify token. Signs the user in if the gate allows it."""
        account_id = self.tokens.redeem(token, TokenPurpose.email_verify, {"email_verified": True})
        account, profile = self._load(account_id)
        if not self.gate.can_login(account, profile):
            if profile.status == ProfileStatus.rejected:
                message = "Email verified. Your account request was rejected."
            else:
                message = "Email verified. Your account is pending approval by an administrator."
            return AuthResult(message=message, account=account, profile=profile)
        tokens = self._start_session(account, profile)
        return AuthResult(message="Email verified.", account=account, profile=profile, tokens=tokens)

    @_storage_guard
    def resend_confirmation(self, email: str) -> AuthResult:
        account = self.store.get_account_by_email(self.credentials.validate_email(email))
        if account is None:
            raise NotFound("No account found with this email.")
        if account.email_verified:
            return AuthResult(message="Email is already verified.", account=account)
        profile = self._profile_for(account)
        self._send_confirmation(account, profile)
        return AuthResult(message="Confirmation email sent.", account=account, requires_email_verification=True)

    # ------------------------------------------------------------------
    # Sign-in / session lifecycle
    # ------------------------------------------------------------------

    @_storage_guard
    def sign_in(self, email: str, password: str) -> AuthResult:
        account = self.credentials.authenticate(email, password)
        if account is None:
            logger.info("Failed sign-in attempt")
            raise InvalidCredentials()
        profile = self._profile_for(account)
        self.gate.check_login(account, profile)
        tokens = self._start_session(account, profile)
        return AuthResult(message="Signed in.", account=account, profile=profile, tokens=tokens)

    @_storage_guard
    def sign_in_with_oauth(self, email: str) -> AuthResult:
        """Sign in with an email the OAuth provider has already verified [H1].

        No auto-provisioning: the account must exist. A verified provider
        email counts as mailbox proof, so email_verified is set here; the
        approval gate still applies.
        """
        account = self.store.get_account_by_email(self.credentials.validate_email(email))
        if account is None:
            logger.info("OAuth sign-in for unregistered email rejected")
            raise InvalidCredentials("No account is registered for this email. Please sign up first.")
        if not account.email_verified:
            self.store.update_account(account.id, email_verified=True)
            account.email_verified = True
        profile = self._profile_for(account)
        self.gate.check_login(account, profile)
        tokens = self._start_session(account, profile)
        return AuthResult(message="Signed in.", account=account, profile=profile, tokens=tokens)

    @_storage_guard
    def refresh(self, refresh_token: str) -> SessionTokens:
        return self.sessions.refresh(refresh_token)

    @_storage_guard
    def sign_out(self, access_token: str) -> AuthResult:
        """Revoke every refresh token of the caller. The access token expires on its own."""
        account = self._authenticated(access_token)
        self.sessions.revoke_all(account.id)
        return AuthResult(message="Signed out.", account=account)

    @_storage_guard
    def me(self, access_token: str) -> AuthResult:
        account = self._authenticated(access_token)
        return AuthResult(message="OK", account=account, profile=self._profile_for(account))

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    @_storage_guard
    def forgot_password(self, email: str) -> AuthResult:
        """Always answers the same way; only sends mail when the account exists."""
        try:
            normalized = self.credentials.validate_email(email)
        except ValidationError:
            return AuthResult(message=FORGOT_PASSWORD_MESSAGE)
        account = self.store.get_account_by_email(normalized)
        if account is None:
            logger.info("Password reset requested for unknown email")
            return AuthResult(message=FORGOT_PASSWORD_MESSAGE)

        profile = self._profile_for(account)
        raw = self.tokens.issue(account.id, TokenPurpose.password_reset)
        self.dispatcher.dispatch(
            account.email,
            templates.PASSWORD_RESET,
            {
                "full_name": profile.full_name,
                "reset_url": f"{self._frontend}/reset-password/{raw}",
                "expires_minutes": self._minutes(TokenPurpose.password_reset),
            },
        )
        return AuthResult(message=FORGOT_PASSWORD_MESSAGE)

    @_storage_guard
    def reset_password(self, token: str, new_password: str) -> AuthResult:
        """Redeem a password_reset token, set the password, revoke all sessions.

        The password is checked before the token is redeemed so a weak choice
        does not burn the link. Consuming the token, writing the new hash and
        clearing the refresh tokens happen in one store transaction; if it
        fails the link stays valid for a retry.
        """
        password_hash = self.credentials.hash_new_password(new_password)
        account_id = self.tokens.redeem(
            token,
            TokenPurpose.password_reset,
            {"password_hash": password_hash},
            revoke_sessions=True,
        )
        logger.info("Password reset (account_id=%s)", account_id)

        account, profile = self._load(account_id)
        self._notify_password_changed(account, profile)
        return AuthResult(message="Password has been reset. Please sign in with your new password.", account=account)

    @_storage_guard
    def update_password(self, access_token: str, current_password: str, new_password: str) -> AuthResult:
        """Change the password of a signed-in user.

        All existing sessions are revoked; a fresh pair is returned so this
        device stays signed in. The login gate is re-checked first: an access
        token outlives a rejection or suspension by up to its TTL.
        """
        account = self._authenticated(access_token)
        if self.credentials.authenticate(account.email, current_password) is None:
            raise InvalidCredentials("Current password is incorrect.")
        profile = self._profile_for(account)
        self.gate.check_login(account, profile)
        if current_password == new_password:
            raise ValidationError("New password must be different from the current password.")
        self.credentials.set_password(account.id, new_password)
        self.sessions.revoke_all(account.id)

        self._notify_password_changed(account, profile)
        tokens = self.sessions.issue(account, profile)
        return AuthResult(message="Password updated.", account=account, profile=profile, tokens=tokens)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @_storage_guard
    def list_profiles(self, status: ProfileStatus | None = None, role: Role | None = None) -> list[EmployeeProfile]:
        return self.store.list_profiles(status=status, role=role)

    @_storage_guard
    def admin_approve(self, profile_id: str, actor_id: str) -> EmployeeProfile:
        profile = self.gate.approve(profile_id, actor_id)
        account = self.store.get_account(profile.account_id)
        if account is not None:
            self.dispatcher.dispatch(
                account.email,
                templates.ACCOUNT_APPROVED,
                {"full_name": profile.full_name, "login_url": f"{self._frontend}/login"},
            )
        return profile

    @_storage_guard
    def admin_reject(self, profile_id: str, actor_id: str, reason: str | None = None) -> EmployeeProfile:
        profile = self.gate.reject(profile_id, actor_id, reason)
        account = self.store.get_account(profile.account_id)
        if account is not None:
            self.dispatcher.dispatch(
                account.email,
                templates.ACCOUNT_REJECTED,
                {"full_name": profile.full_name, "reason": reason},
            )
        return profile

    @_storage_guard
    def admin_override(
        self,
        profile_id: str,
        actor_id: str,
        role: Role | None = None,
        status: ProfileStatus | None = None,
        reason: str | None = None,
    ) -> EmployeeProfile:
        """Reassign role/status. Leaving ``active`` revokes the employee's sessions."""
        profile = self.gate.override(profile_id, actor_id, role=role, status=status, reason=reason)
        if profile.status != ProfileStatus.active:
            self.sessions.revoke_all(profile.account_id)
        return profile

    @_storage_guard
    def audit_trail(self, profile_id: str) -> list[AuditEvent]:
        return self.gate.audit_trail(profile_id)

    @_storage_guard
    def create_admin(self, email: str, password: str, full_name: str) -> AuthResult:
        """Bootstrap an administrator from the CLI.

        The operator is trusted with the mailbox, so the account is created
        verified and active and no confirmation email is sent.
        """
        account, profile = self.credentials.create(email, password, full_name, Role.admin, ProfileStatus.active)
        self.store.update_account(account.id, email_verified=True)
        account.email_verified = True
        return AuthResult(message="Administrator created.", account=account, profile=profile)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_session(self, account: Account, profile: EmployeeProfile) -> SessionTokens:
        tokens = self.sessions.issue(account, profile)
        self.store.update_account(account.id, last_login=self._clock().isoformat())
        return tokens

    def _authenticated(self, access_token: str) -> Account:
        claims = self.sessions.decode_access(access_token)
        if claims is None:
            raise Unauthorized()
        account = self.store.get_account(claims.subject)
        if account is None:
            raise Unauthorized()
        return account

    def _profile_for(self, account: Account) -> EmployeeProfile:
        profile = self.store.get_profile_by_account(account.id)
        if profile is None:
            # Account and profile are created together; a gap is data corruption.
            logger.error("Account %s has no employee profile", account.id)
            raise Internal()
        return profile

    def _load(self, account_id: str) -> tuple[Account, EmployeeProfile]:
        account = self.store.get_account(account_id)
        if account is None:
            logger.error("Token redeemed for missing account %s", account_id)
            raise Internal()
        return account, self._profile_for(account)

    def _minutes(self, purpose: TokenPurpose) -> int:
        return int(self.tokens.ttl(purpose).total_seconds() // 60)

    def _send_confirmation(self, account: Account, profile: EmployeeProfile) -> None:
        raw = self.tokens.issue(account.id, TokenPurpose.email_verify)
        self.dispatcher.dispatch(
            account.email,
            templates.EMAIL_CONFIRMATION,
            {
                "full_name": profile.full_name,
                "confirmation_url": f"{self._frontend}/confirm-email/{raw}",
                "expires_minutes": self._minutes(TokenPurpose.email_verify),
                "pending_approval": profile.status == ProfileStatus.pending,
            },
        )

    def _notify_admins(self, account: Account, profile: EmployeeProfile) -> None:
        """Tell every active administrator that a new employee awaits review."""
        admins = self.store.list_profiles(status=ProfileStatus.active, role=Role.admin)
        if not admins:
            logger.warning("No active administrator to review profile %s", profile.id)
        for admin in admins:
            admin_account = self.store.get_account(admin.account_id)
            if admin_account is None:
                continue
            self.dispatcher.dispatch(
                admin_account.email,
                templates.APPROVAL_REQUEST,
                {
                    "admin_name": admin.full_name,
                    "employee_name": profile.full_name,
                    "employee_email": account.email,
                    "signup_date": profile.created_at[:10],
                    "approval_url": f"{self._frontend}/admin/employees?status=pending",
                },
            )

    def _notify_password_changed(self, account: Account, profile: EmployeeProfile) -> None:
        self.dispatcher.dispatch(account.email, templates.PASSWORD_CHANGED, {"full_name": profile.full_name})

