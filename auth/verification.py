"""
auth/verification.py -- VerificationTokenManager: single-use, time-boxed tokens.

Two purposes share one mechanism:
  email_verify   -- proves control of the mailbox (default lifetime 1 hour)
  password_reset -- authorizes a password change (default lifetime 10 minutes)

Tokens are 256-bit random strings; only their HMAC digest is stored. Issuing
a token replaces any earlier one for the same purpose, so at most one live
token per purpose per account exists.

Redemption is a compare-and-clear in the store. An expired token, an unknown
token, a token for the other purpose and an already-redeemed token all fail
the same way with InvalidOrExpiredToken.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import InvalidOrExpiredToken
from auth.models import TokenPurpose, VerificationToken
from auth.store import Store
from auth.tokens import generate_opaque_token, hash_token
from core.config import Settings

logger = logging.getLogger("staffgate.auth.verification")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class VerificationTokenManager:
    def __init__(self, store: Store, settings: Settings, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._key = settings.secret_key
        self._clock = clock
        self._ttl = {
            TokenPurpose.email_verify: timedelta(seconds=settings.email_verify_ttl_seconds),
            TokenPurpose.password_reset: timedelta(seconds=settings.password_reset_ttl_seconds),
        }

    def ttl(self, purpose: TokenPurpose) -> timedelta:
        return self._ttl[purpose]

    def issue(self, account_id: str, purpose: TokenPurpose) -> str:
        """Generate, store and return a new raw token for ``purpose``."""
        raw = generate_opaque_token()
        expires_at = self._clock() + self._ttl[purpose]
        self._store.save_token(
            VerificationToken(
                account_id=account_id,
                purpose=purpose,
                token_hash=hash_token(raw, self._key),
                expires_at=expires_at.timestamp(),
            )
        )
        logger.info("Issued %s token (account_id=%s expires_at=%s)", purpose.value, account_id, expires_at.isoformat())
        return raw

    def redeem(
        self,
        token: str,
        purpose: TokenPurpose,
        account_updates: dict | None = None,
        revoke_sessions: bool = False,
    ) -> str:
        """Consume ``token`` and return its account id.

        ``account_updates`` (e.g. {"email_verified": True}) and, when
        ``revoke_sessions`` is set, the removal of every refresh token are
        applied in the same atomic step that clears the token.
        """
        if not token:
            raise InvalidOrExpiredToken()
        account_id = self._store.consume_token(
            hash_token(token, self._key),
            purpose,
            self._clock().timestamp(),
            account_updates,
            revoke_sessions,
        )
        if account_id is None:
            logger.info("Rejected %s token redemption", purpose.value)
            raise InvalidOrExpiredToken()
        logger.info("Redeemed %s token (account_id=%s)", purpose.value, account_id)
        return account_id
