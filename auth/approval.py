"""
auth/approval.py -- ApprovalGate: profile status state machine and login policy.

State machine over EmployeeProfile.status:

    pending --approve--> active
    pending --reject---> rejected

active and rejected are terminal on the normal path. An administrator can
still reassign role/status directly with override(); that path is outside the
login flow and always leaves an AuditEvent behind.

Login policy: can_login() is ``account.email_verified AND status == active``.
check_login() reports which condition failed, because the three blocking
reasons map to different responses and must not be collapsed into a generic
"unauthorized".

Auto-activation (AUTO_ACTIVATE_EMPLOYEES) is a deployment toggle that only
changes the initial status of new profiles; the policy itself never changes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from auth.errors import (
    AccountRejected,
    EmailNotVerified,
    Forbidden,
    InvalidStatusTransition,
    NotFound,
    PendingApproval,
    ValidationError,
)
from auth.models import Account, AuditAction, AuditEvent, EmployeeProfile, ProfileStatus, Role
from auth.store import Store
from core.config import Settings

logger = logging.getLogger("staffgate.auth.approval")


class ApprovalGate:
    def __init__(self, store: Store, settings: Settings) -> None:
        self._store = store
        self._auto_activate = settings.auto_activate_employees

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def initial_status(self, role: Role) -> ProfileStatus:
        if role == Role.admin or self._auto_activate:
            return ProfileStatus.active
        return ProfileStatus.pending

    def can_login(self, account: Account, profile: EmployeeProfile) -> bool:
        return account.email_verified and profile.status == ProfileStatus.active

    def check_login(self, account: Account, profile: EmployeeProfile) -> None:
        """Raise the specific blocking reason, or return if login is allowed.

        A rejected profile is reported first: it is terminal, so telling the
        user to verify their email would send them down a dead end.
        """
        if profile.status == ProfileStatus.rejected:
            raise AccountRejected()
        if not account.email_verified:
            raise EmailNotVerified()
        if profile.status != ProfileStatus.active:
            raise PendingApproval()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def approve(self, profile_id: str, actor_id: str) -> EmployeeProfile:
        return self._review(profile_id, actor_id, ProfileStatus.active, AuditAction.approve, None)

    def reject(self, profile_id: str, actor_id: str, reason: str | None = None) -> EmployeeProfile:
        return self._review(profile_id, actor_id, ProfileStatus.rejected, AuditAction.reject, reason)

    def _review(
        self,
        profile_id: str,
        actor_id: str,
        target: ProfileStatus,
        action: AuditAction,
        reason: str | None,
    ) -> EmployeeProfile:
        profile = self._require(profile_id)
        if profile.status != ProfileStatus.pending:
            raise InvalidStatusTransition(
                f"Cannot {action.value} an employee whose status is {profile.status.value}."
            )
        fields = {
            "status": target,
            "reviewed_by": actor_id,
            "reviewed_at": datetime.now(timezone.utc).isoformat(),
            "rejection_reason": reason if target == ProfileStatus.rejected else None,
        }
        audit = AuditEvent(
            profile_id=profile_id,
            actor_account_id=actor_id,
            action=action,
            from_status=profile.status,
            to_status=target,
            from_role=profile.role,
            to_role=profile.role,
            reason=reason,
        )
        # Conditional on still being pending: a concurrent reviewer loses here.
        if not self._store.update_profile(profile_id, fields, expected_status=ProfileStatus.pending, audit=audit):
            raise InvalidStatusTransition()
        logger.info("Profile %s %sd by %s", profile_id, action.value, actor_id)
        return self._require(profile_id)

    def override(
        self,
        profile_id: str,
        actor_id: str,
        role: Role | None = None,
        status: ProfileStatus | None = None,
        reason: str | None = None,
    ) -> EmployeeProfile:
        """Administrative reassignment of role and/or status, always audited.

        Guards:
          - an admin cannot override their own profile (lock-out)
          - the last active admin cannot be demoted or moved out of active
        """
        profile = self._require(profile_id)
        if role is None and status is None:
            raise ValidationError("No fields to update.")
        if profile.account_id == actor_id:
            raise Forbidden("You cannot change your own role or status.")

        new_role = role or profile.role
        new_status = status or profile.status
        loses_admin = profile.role == Role.admin and profile.status == ProfileStatus.active
        loses_admin = loses_admin and (new_role != Role.admin or new_status != ProfileStatus.active)
        if loses_admin and self._store.count_active_admins() <= 1:
            raise ValidationError("Cannot demote or deactivate the last active admin.")

        fields: dict = {"role": new_role, "status": new_status, "reviewed_by": actor_id}
        fields["reviewed_at"] = datetime.now(timezone.utc).isoformat()
        if new_status == ProfileStatus.rejected:
            fields["rejection_reason"] = reason
        audit = AuditEvent(
            profile_id=profile_id,
            actor_account_id=actor_id,
            action=AuditAction.override,
            from_status=profile.status,
            to_status=new_status,
            from_role=profile.role,
            to_role=new_role,
            reason=reason,
        )
        if not self._store.update_profile(profile_id, fields, expected_status=profile.status, audit=audit):
            raise InvalidStatusTransition("The employee was modified concurrently. Please retry.")
        logger.info(
            "Profile %s overridden by %s (role %s->%s, status %s->%s)",
            profile_id,
            actor_id,
            profile.role.value,
            new_role.value,
            profile.status.value,
            new_status.value,
        )
        return self._require(profile_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def audit_trail(self, profile_id: str) -> list[AuditEvent]:
        self._require(profile_id)
        return self._store.list_audit_events(profile_id)

    def _require(self, profile_id: str) -> EmployeeProfile:
        profile = self._store.get_profile(profile_id)
        if profile is None:
            raise NotFound("Employee not found.")
        return profile
