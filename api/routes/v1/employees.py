"""
api/routes/v1/employees.py -- Administrator endpoints for the approval gate.

Routes (all require an active admin):
  GET   /api/v1/employees?status=&role=    -- list profiles, oldest first
  POST  /api/v1/employees/{id}/approve     -- pending -> active
  POST  /api/v1/employees/{id}/reject      -- pending -> rejected
  PATCH /api/v1/employees/{id}             -- override role and/or status
  GET   /api/v1/employees/{id}/audit       -- audit trail, oldest first

Security:
  [M4] PATCH blocks self-override and demoting/deactivating the last active
       admin (ApprovalGate.override).
  Approve/reject are conditional on the profile still being pending, so two
  admins reviewing at once cannot both succeed (409 for the loser).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from api.models import AuditEventResponse, EmployeePatch, EmployeeReject, ProfileResponse
from auth.dependencies import get_facade, require_admin
from auth.errors import ValidationError
from auth.facade import AuthFacade
from auth.models import EmployeeProfile, ProfileStatus, Role

router = APIRouter()


@router.get("/employees", response_model=list[ProfileResponse])
def list_employees(
    status: Optional[ProfileStatus] = None,
    role: Optional[Role] = None,
    admin: EmployeeProfile = Depends(require_admin),
    facade: AuthFacade = Depends(get_facade),
) -> list[ProfileResponse]:
    """List employee profiles. ``?status=pending`` is the review queue."""
    return [ProfileResponse.from_profile(p) for p in facade.list_profiles(status=status, role=role)]


@router.post("/employees/{profile_id}/approve", response_model=ProfileResponse)
def approve_employee(
    profile_id: str,
    admin: EmployeeProfile = Depends(require_admin),
    facade: AuthFacade = Depends(get_facade),
) -> ProfileResponse:
    return ProfileResponse.from_profile(facade.admin_approve(profile_id, admin.account_id))


@router.post("/employees/{profile_id}/reject", response_model=ProfileResponse)
def reject_employee(
    profile_id: str,
    body: EmployeeReject | None = None,
    admin: EmployeeProfile = Depends(require_admin),
    facade: AuthFacade = Depends(get_facade),
) -> ProfileResponse:
    reason = body.reason if body else None
    return ProfileResponse.from_profile(facade.admin_reject(profile_id, admin.account_id, reason))


@router.patch("/employees/{profile_id}", response_model=ProfileResponse)
def update_employee(
    profile_id: str,
    body: EmployeePatch,
    admin: EmployeeProfile = Depends(require_admin),
    facade: AuthFacade = Depends(get_facade),
) -> ProfileResponse:
    """Reassign role and/or status. Always recorded in the audit trail."""
    if body.role is None and body.status is None:
        raise ValidationError("No fields to update.")
    profile = facade.admin_override(
        profile_id,
        admin.account_id,
        role=body.role,
        status=body.status,
        reason=body.reason,
    )
    return ProfileResponse.from_profile(profile)


@router.get("/employees/{profile_id}/audit", response_model=list[AuditEventResponse])
def employee_audit(
    profile_id: str,
    admin: EmployeeProfile = Depends(require_admin),
    facade: AuthFacade = Depends(get_facade),
) -> list[AuditEventResponse]:
    return [AuditEventResponse.from_event(e) for e in facade.audit_trail(profile_id)]
