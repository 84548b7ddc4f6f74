"""
API request and response models for StaffGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field constraints here only bound sizes and shapes. Business rules (password
policy, email format, state transitions) live in auth/ and surface as
validation_error / domain error codes, not as 422s.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuditEvent, EmployeeProfile, ProfileStatus, Role, SessionTokens

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    The role is not accepted from the client: self-service signups are always
    employees. Administrators are bootstrapped with the CLI.

    Whitespace is trimmed from the descriptive fields only. The password is
    kept byte-for-byte so it matches what sign-in and reset compare against.
    """

    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=256)
    full_name: str = Field(min_length=1, max_length=200)
    department: Optional[str] = Field(default=None, max_length=100)
    position: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email", "full_name", "department", "position", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value


class SignInRequest(BaseModel):
    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class EmailRequest(BaseModel):
    """Request body for resend-confirmation and forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=254)


class ResetPasswordRequest(BaseModel):
    password: str = Field(min_length=1, max_length=256)


class UpdatePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh (the bearer header also works)."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class EmployeeReject(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class EmployeePatch(BaseModel):
    """Request body for PATCH /api/v1/employees/{id}. At least one of role/status."""

    role: Optional[Role] = None
    status: Optional[ProfileStatus] = None
    reason: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class TokenPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_tokens(cls, tokens: SessionTokens) -> "TokenPair":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
        )


class ProfileResponse(BaseModel):
    """An employee profile as seen by administrators and by its owner."""

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    full_name: str
    role: Role
    status: ProfileStatus
    department: Optional[str] = None
    position: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: str

    @classmethod
    def from_profile(cls, profile: EmployeeProfile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            account_id=profile.account_id,
            full_name=profile.full_name,
            role=profile.role,
            status=profile.status,
            department=profile.department,
            position=profile.position,
            reviewed_by=profile.reviewed_by,
            reviewed_at=profile.reviewed_at,
            rejection_reason=profile.rejection_reason,
            created_at=profile.created_at,
        )


class AuthResponse(BaseModel):
    """Response for signup, login, confirm, and the other auth flows.

    ``tokens`` is null whenever the caller is not signed in by this request.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    email: Optional[str] = None
    requires_email_verification: bool = False
    profile: Optional[ProfileResponse] = None
    tokens: Optional[TokenPair] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    email: str
    email_verified: bool
    last_login: Optional[str] = None
    profile: ProfileResponse


class OAuthProviderInfo(BaseModel):
    """A configured OAuth provider exposed by GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    profile_id: str
    actor_account_id: str
    action: str
    from_status: ProfileStatus
    to_status: ProfileStatus
    from_role: Role
    to_role: Role
    reason: Optional[str] = None
    created_at: str

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            profile_id=event.profile_id,
            actor_account_id=event.actor_account_id,
            action=event.action.value,
            from_status=event.from_status,
            to_status=event.to_status,
            from_role=event.from_role,
            to_role=event.to_role,
            reason=event.reason,
            created_at=event.created_at,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
