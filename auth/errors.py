"""
auth/errors.py -- Domain error taxonomy for the identity core.

Every error carries a stable machine-readable ``code`` and a human message
that is safe to show to the client. The HTTP layer (api/main.py) maps codes
to status codes; nothing in auth/ knows about HTTP.

Messages for blocking reasons (EmailNotVerified, PendingApproval,
AccountRejected) are intentionally distinct: the caller has already proven
mailbox or credential ownership. Everything that could enable account
enumeration uses a uniform message instead.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses set ``code`` and a default ``message``."""

    code: str = "auth_error"
    message: str = "Authentication error."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    message = "An account with this email already exists. Please sign in instead."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class EmailNotVerified(AuthError):
    code = "email_not_verified"
    message = "Please verify your email before logging in."


class PendingApproval(AuthError):
    code = "pending_approval"
    message = "Your account is pending approval. Please wait for an administrator to approve it."


class AccountRejected(AuthError):
    code = "account_rejected"
    message = "Your account request was rejected. Contact an administrator for details."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    message = "This link is invalid or has expired. Please request a new one."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    message = "Refresh token is invalid or has been revoked."


class ValidationError(AuthError):
    code = "validation_error"
    message = "Invalid input."


class NotFound(AuthError):
    code = "not_found"
    message = "Not found."


class Unauthorized(AuthError):
    code = "unauthorized"
    message = "Authentication required."


class Forbidden(AuthError):
    code = "forbidden"
    message = "Admin access required."


class InvalidStatusTransition(AuthError):
    code = "invalid_status_transition"
    message = "This employee has already been reviewed."


class OAuthFailed(AuthError):
    code = "oauth_failed"
    message = "OAuth authentication failed. Please try again."


class Internal(AuthError):
    code = "internal_error"
    message = "An unexpected error occurred."
