"""
auth/oauth.py -- Authlib OIDC pass-through configuration.

A single OpenID Connect provider (Okta, Azure AD, Keycloak, Google Workspace,
...) can be configured. It is an alternative way to prove who the caller is;
it never creates accounts. The provider's verified email is matched against
an existing account by AuthFacade.sign_in_with_oauth().

Security notes:
  [H1] Email verification is mandatory. get_oauth_user_info() raises
       OAuthFailed if the provider does not confirm the email is verified.
       An unverified email could belong to an attacker who added a victim's
       address without confirming it.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware. The session stores the state between the
  authorization redirect and the callback -- never trust state from query
  params alone.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel layer.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.errors import OAuthFailed
from core.config import Settings

logger = logging.getLogger("staffgate.auth.oauth")

PROVIDER = "oidc"


def build_oauth(settings: Settings) -> OAuth:
    """Return an authlib registry with the OIDC client registered when configured."""
    oauth = OAuth()
    if settings.oidc_configured:
        oauth.register(
            name=PROVIDER,
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            server_metadata_url=settings.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("OIDC provider registered (display name: %s)", settings.oidc_display_name)
    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return metadata for the configured provider, if any.

    Used by GET /api/v1/auth/providers so a frontend can render its buttons.
    Returns list of {"name": str, "label": str} dicts.
    """
    if not settings.oidc_configured:
        return []
    return [{"name": PROVIDER, "label": settings.oidc_display_name}]


def get_oauth_user_info(token: dict) -> tuple[str, str]:
    """Extract (email, subject_id) from an OIDC token response.

    [H1] The email claim is only accepted when email_verified is True.
    Some providers omit email_verified entirely -- that is treated as
    unverified.

    Raises:
        OAuthFailed: If a verified email cannot be confirmed.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise OAuthFailed(detail="No userinfo in token response.")

    if not userinfo.get("email_verified", False):
        raise OAuthFailed(
            "Your identity provider has not verified this email address.",
            detail="email_verified claim missing or false.",
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise OAuthFailed(detail="Missing email or sub claim in userinfo.")

    return email, subject_id
