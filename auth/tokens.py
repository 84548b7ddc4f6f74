"""
auth/tokens.py -- JWT, password hashing, and opaque token utilities.

Security design decisions:
  JWT: python-jose with HS256. Callers pass the signing key explicitly --
       access and refresh tokens use different keys (see core/config.py [M8]).
       Decoding returns None on any failure; the caller decides which domain
       error that becomes.

  Passwords: bcrypt directly (no passlib wrapper). Cost factor is a parameter
       so tests can run at the minimum of 4 rounds. The _DUMMY_HASH constant
       enables timing equalization when an email does not exist [C1].

  Opaque tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. Only
       HMAC-SHA256(key, token) is persisted, so a leaked database does not
       leak redeemable verification links or refresh tokens.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

_ALGORITHM = "HS256"

# bcrypt silently truncates input beyond 72 bytes; the password policy in
# auth/credentials.py rejects anything longer.
BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. A malformed stored hash is
    treated as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email does not exist.
_DUMMY_HASH: str = hash_password("staffgate_timing_dummy")


def burn_dummy_check(plain: str) -> None:
    """Spend one bcrypt comparison against a hash that never matches."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def encode_jwt(claims: dict, secret: str, ttl_seconds: int, now: datetime | None = None) -> str:
    """Encode a signed JWT with iat/exp derived from ``now`` and ``ttl_seconds``."""
    issued = now or datetime.now(timezone.utc)
    payload = dict(claims)
    payload["iat"] = issued
    payload["exp"] = issued + timedelta(seconds=ttl_seconds)
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def decode_jwt(token: str, secret: str, token_type: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    ``token_type`` must match the ``type`` claim so an access token can never
    stand in for a refresh token even if keys were misconfigured.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != token_type or "sub" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return a URL-safe random token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def hash_token(raw_token: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw_token) as a hex string.

    Deterministic, so stores can look tokens up by digest via a UNIQUE index.
    """
    return hmac.new(key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()
