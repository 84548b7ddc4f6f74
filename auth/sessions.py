"""
auth/sessions.py -- SessionIssuer: access/refresh token pairs.

Access tokens:  15 minutes, claims {sub, email, role, type="access"},
                signed with SECRET_KEY. Verified statelessly (signature +
                expiry only) on every request.
Refresh tokens: 7 days, claims {sub, email, type="refresh", jti}, signed with
                REFRESH_SECRET_KEY. Verified statefully: the token's digest
                must also be a current member of the account's refresh set.

The asymmetry is the point: access checks are cheap and frequent, refresh
checks are rare and must be revocable.

Rotation [R1]: refresh() swaps the old digest for the new one in a single
store operation. Replaying a rotated token finds no member to remove and
fails with InvalidRefreshToken. The random jti keeps two tokens minted in
the same second for the same account distinct.

Refresh re-runs the login eligibility check (``can_login``) before
rotating, so an account that has left the active state cannot extend its session with a token it already holds.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime

from auth.errors import InvalidRefreshToken
from auth.models import AccessClaims, Account, EmployeeProfile, Role, SessionTokens
from auth.store import Store
from auth.tokens import decode_jwt, encode_jwt, hash_token
from auth.verification import utc_now
from core.config import Settings

logger = logging.getLogger("staffgate.auth.sessions")

ACCESS = "access"
REFRESH = "refresh"


class SessionIssuer:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        can_login: Callable[[Account, EmployeeProfile], bool] | None = None,
    ) -> None:
        self._store = store
        self._can_login = can_login
        self._access_key = settings.secret_key
        self._refresh_key = settings.refresh_secret_key
        self._access_ttl = settings.access_token_ttl_seconds
        self._refresh_ttl = settings.refresh_token_ttl_seconds
        self._clock = clock

    def issue(self, account: Account, profile: EmployeeProfile) -> SessionTokens:
        """Mint a new pair and register the refresh token for the account."""
        tokens, refresh_hash = self._mint(account, profile.role)
        self._store.add_refresh_token(account.id, refresh_hash)
        logger.info("Session issued (account_id=%s)", account.id)
        return tokens

    def refresh(self, old_refresh_token: str) -> SessionTokens:
        """Rotate ``old_refresh_token`` into a fresh pair [R1].

        Raises InvalidRefreshToken for a bad signature, expiry, wrong token
        type, unknown account, an account that may no longer sign in, or a
        token that is no longer current.
        """
        payload = decode_jwt(old_refresh_token, self._refresh_key, REFRESH)
        if payload is None:
            raise InvalidRefreshToken()
        account = self._store.get_account(payload["sub"])
        profile = self._store.get_profile_by_account(payload["sub"])
        if account is None or profile is None:
            raise InvalidRefreshToken()
        if self._can_login is not None and not self._can_login(account, profile):
            logger.warning("Refresh refused for ineligible account (account_id=%s)", account.id)
            raise InvalidRefreshToken()

        tokens, new_hash = self._mint(account, profile.role)
        old_hash = hash_token(old_refresh_token, self._refresh_key)
        if not self._store.rotate_refresh_token(account.id, old_hash, new_hash):
            logger.warning("Refresh token replay or revoked token rejected (account_id=%s)", account.id)
            raise InvalidRefreshToken()
        logger.info("Session refreshed (account_id=%s)", account.id)
        return tokens

    def revoke_all(self, account_id: str) -> int:
        """Invalidate every refresh token for the account. Access tokens run out on their own."""
        removed = self._store.clear_refresh_tokens(account_id)
        logger.info("Revoked %d refresh token(s) (account_id=%s)", removed, account_id)
        return removed

    def decode_access(self, token: str) -> AccessClaims | None:
        """Stateless access-token check. Returns None on any failure."""
        payload = decode_jwt(token, self._access_key, ACCESS)
        if payload is None:
            return None
        try:
            return AccessClaims(subject=payload["sub"], email=payload["email"], role=Role(payload["role"]))
        except (KeyError, ValueError):
            return None

    def _mint(self, account: Account, role: Role) -> tuple[SessionTokens, str]:
        now = self._clock()
        access = encode_jwt(
            {"sub": account.id, "email": account.email, "role": role.value, "type": ACCESS},
            self._access_key,
            self._access_ttl,
            now,
        )
        refresh = encode_jwt(
            {"sub": account.id, "email": account.email, "type": REFRESH, "jti": secrets.token_hex(16)},
            self._refresh_key,
            self._refresh_ttl,
            now,
        )
        tokens = SessionTokens(access_token=access, refresh_token=refresh, expires_in=self._access_ttl)
        return tokens, hash_token(refresh, self._refresh_key)
