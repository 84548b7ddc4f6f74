"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive in the Authorization: Bearer <token> header. The token
is verified statelessly (signature, expiry, type) and then resolved to the
caller's Account and EmployeeProfile through the facade's store.

try_get_current_claims() is the soft variant (returns None on failure).
get_current_account() wraps it and raises Unauthorized (401).
require_admin() wraps get_current_account() and raises Forbidden (403) unless
the caller's profile is an active admin.

Errors are domain errors (auth/errors.py); the handler in api/main.py turns
them into the JSON error envelope.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import Forbidden, Unauthorized
from auth.facade import AuthFacade
from auth.models import AccessClaims, Account, EmployeeProfile, ProfileStatus, Role


def get_facade(request: Request) -> AuthFacade:
    return request.app.state.facade


def bearer_token(request: Request) -> str | None:
    """Return the raw token from an ``Authorization: Bearer`` header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def try_get_current_claims(request: Request) -> AccessClaims | None:
    """Verify the bearer access token. Never raises."""
    token = bearer_token(request)
    if not token:
        return None
    return get_facade(request).sessions.decode_access(token)


def get_current_account(request: Request) -> Account:
    """Require a valid access token for an existing account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    claims = try_get_current_claims(request)
    if claims is None:
        raise Unauthorized()
    account = get_facade(request).store.get_account(claims.subject)
    if account is None:
        raise Unauthorized()
    return account


def require_admin(request: Request) -> EmployeeProfile:
    """Require an active admin profile. Returns the admin's profile.

    The role is read from the store, not the token claim, so a demotion takes
    effect on the next request rather than when the access token expires.
    """
    account = get_current_account(request)
    profile = get_facade(request).store.get_profile_by_account(account.id)
    if profile is None or profile.role != Role.admin or profile.status != ProfileStatus.active:
        raise Forbidden()
    return profile
