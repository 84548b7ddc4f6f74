"""
api/routes/v1/auth.py -- Account, session and password REST endpoints.

Routes:
  POST /api/v1/auth/signup                   -- create account + profile; 201, no tokens
  POST /api/v1/auth/login                    -- password login; returns tokens
  GET|POST /api/v1/auth/confirm/{token}      -- redeem email confirmation link
  POST /api/v1/auth/resend-confirmation      -- re-send the confirmation link
  POST /api/v1/auth/refresh                  -- rotate a refresh token
  POST /api/v1/auth/signout                  -- revoke every refresh token
  POST /api/v1/auth/forgot-password          -- always 200; emails a reset link
  POST /api/v1/auth/reset-password/{token}   -- redeem reset link, set password
  PUT  /api/v1/auth/update-password          -- change password while signed in
  GET  /api/v1/auth/me                       -- current account and profile
  GET  /api/v1/auth/providers                -- enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/login              -- redirect to the OIDC provider
  GET  /api/v1/auth/oauth/callback           -- OIDC callback; returns tokens

Security:
  [H2] POST /login is rate-limited to 10 requests/minute per IP; endpoints
       that send email to 5 requests/minute per IP.
  [C1] AuthFacade.sign_in() equalizes timing for unknown emails.
  [M5] Cache-Control: no-store on every token and single-use-link response.

Handlers that call the facade are plain ``def`` so FastAPI runs them in the
threadpool; bcrypt and the store are blocking.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import EMAIL_LIMIT, LOGIN_LIMIT, limiter
from api.models import (
    AuthResponse,
    EmailRequest,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    ProfileResponse,
    RefreshRequest,
    ResetPasswordRequest,
    SignInRequest,
    SignUpRequest,
    TokenPair,
    UpdatePasswordRequest,
)
from auth.dependencies import bearer_token, get_facade
from auth.errors import InvalidRefreshToken, NotFound, OAuthFailed, Unauthorized
from auth.facade import AuthFacade
from auth.models import AuthResult
from auth.oauth import PROVIDER, get_enabled_providers, get_oauth_user_info

logger = logging.getLogger("staffgate.api.auth")

# Auth policy:
# - signup, login, confirm, resend, forgot, reset, refresh, providers, oauth/*: public
# - signout, update-password, me: bearer access token
router = APIRouter()


def _auth_response(result: AuthResult, status_code: int = 200) -> JSONResponse:
    body = AuthResponse(
        message=result.message,
        email=result.account.email if result.account else None,
        requires_email_verification=result.requires_email_verification,
        profile=ProfileResponse.from_profile(result.profile) if result.profile else None,
        tokens=TokenPair.from_tokens(result.tokens) if result.tokens else None,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _require_bearer(request: Request) -> str:
    token = bearer_token(request)
    if token is None:
        raise Unauthorized()
    return token


# ---------------------------------------------------------------------------
# Sign-up and confirmation
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
@limiter.limit(EMAIL_LIMIT)  # innermost, so the router registers the limited wrapper
def signup(request: Request, body: SignUpRequest, facade: AuthFacade = Depends(get_facade)) -> JSONResponse:
    """Create an account and pending profile. Never signs the caller in."""
    result = facade.sign_up(
        body.email,
        body.password,
        body.full_name,
        department=body.department,
        position=body.position,
    )
    return _auth_response(result, status_code=201)


@router.api_route("/auth/confirm/{token}", methods=["GET", "POST"], response_model=AuthResponse)
def confirm_email(token: str, facade: AuthFacade = Depends(get_facade)) -> JSONResponse:
    """Redeem a confirmation link.

    Returns tokens when the account may log in right away (admin, or
    auto-activation); otherwise a "pending approval" message.
    """
    return _auth_response(facade.confirm_email(token))


@router.post("/auth/resend-confirmation", response_model=AuthResponse)
@limiter.limit(EMAIL_LIMIT)
def resend_confirmation(
    request: Request, body: EmailRequest, facade: AuthFacade = Depends(get_facade)
) -> JSONResponse:
    return _auth_response(facade.resend_confirmation(body.email))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(LOGIN_LIMIT)  # [H2]
def login(request: Request, body: SignInRequest, facade: AuthFacade = Depends(get_facade)) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password both yield invalid_credentials. The
    three blocking reasons (email not verified, pending, rejected) are
    reported only after the password has been proven.
    """
    return _auth_response(facade.sign_in(body.email, body.password))


@router.post("/auth/refresh", response_model=TokenPair)
def refresh(
    request: Request,
    body: RefreshRequest | None = None,
    facade: AuthFacade = Depends(get_facade),
) -> JSONResponse:
    """Rotate a refresh token. Accepts it as a bearer header or in the JSON body."""
    token = bearer_token(request) or (body.refresh_token if body else None)
    if not token:
        raise InvalidRefreshToken()
    tokens = facade.refresh(token)
    resp = JSONResponse(content=TokenPair.from_tokens(tokens).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/signout", response_model=MessageResponse)
def signout(request: Request, facade: AuthFacade = Depends(get_facade)) -> MessageResponse:
    result = facade.sign_out(_require_bearer(request))
    return MessageResponse(message=result.message)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, facade: AuthFacade = Depends(get_facade)) -> MeResponse:
    """Return the authenticated account and its employee profile."""
    result = facade.me(_require_bearer(request))
    return MeResponse(
        account_id=result.account.id,
        email=result.account.email,
        email_verified=result.account.email_verified,
        last_login=result.account.last_login,
        profile=ProfileResponse.from_profile(result.profile),
    )


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(EMAIL_LIMIT)
def forgot_password(request: Request, body: EmailRequest, facade: AuthFacade = Depends(get_facade)) -> MessageResponse:
    """Always returns the same message, whether or not the email is registered."""
    return MessageResponse(message=facade.forgot_password(body.email).message)


@router.post("/auth/reset-password/{token}", response_model=AuthResponse)
def reset_password(token: str, body: ResetPasswordRequest, facade: AuthFacade = Depends(get_facade)) -> JSONResponse:
    return _auth_response(facade.reset_password(token, body.password))


@router.put("/auth/update-password", response_model=AuthResponse)
def update_password(
    request: Request, body: UpdatePasswordRequest, facade: AuthFacade = Depends(get_facade)
) -> JSONResponse:
    """Change the password; every other session is signed out, this one gets fresh tokens."""
    result = facade.update_password(_require_bearer(request), body.current_password, body.new_password)
    return _auth_response(result)


# ---------------------------------------------------------------------------
# OAuth pass-through
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none is configured."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


@router.get("/auth/oauth/login")
async def oauth_login(request: Request):
    """Redirect the browser to the OIDC provider's authorization page."""
    if not request.app.state.settings.oidc_configured:
        raise NotFound("OAuth sign-in is not configured.")
    client = request.app.state.oauth.create_client(PROVIDER)
    redirect_uri = str(request.url_for("oauth_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/callback", response_model=AuthResponse, name="oauth_callback")
async def oauth_callback(request: Request) -> JSONResponse:
    """Exchange the authorization code and sign in the matching account.

    Flow:
      1. Exchange code for token (authlib checks the state stored in the session).
      2. Extract the verified email [H1].
      3. Match an existing account and apply the approval gate.
    """
    if not request.app.state.settings.oidc_configured:
        raise NotFound("OAuth sign-in is not configured.")
    client = request.app.state.oauth.create_client(PROVIDER)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("OAuth token exchange failed: %s", exc.error)
        raise OAuthFailed() from exc

    email, _subject = get_oauth_user_info(token)
    facade: AuthFacade = request.app.state.facade
    result = await run_in_threadpool(facade.sign_in_with_oauth, email)
    return _auth_response(result)
