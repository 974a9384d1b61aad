from typing import Optional

from fastapi import APIRouter, Query, status

from app.schemas.auth import (
    AuthResult,
    AuthStatusResponse,
    ForgotPasswordRequest,
    LoginRequest,
    OAuthCallbackRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from app.schemas.common import MessageResponse
from app.schemas.oauth import OAuthLoginResponse
from app.schemas.user import MeResponse
from app.utils.auth import Auth, Context, CurrentSession, CurrentUser, Device, OAuth

router = APIRouter(prefix="/auth", tags=["Authentication"])

# Same reply whether or not the account exists.
FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent"


@router.get("/status", response_model=AuthStatusResponse)
async def auth_status(context: Context) -> AuthStatusResponse:
    return AuthStatusResponse(
        providers=context.settings.enabled_providers(),
        oauth_configured=context.oauth_client is not None,
    )


@router.post("/register", response_model=AuthResult, status_code=status.HTTP_201_CREATED)
async def register(data: RegisterRequest, auth: Auth, device: Device) -> AuthResult:
    return await auth.register_local(
        email=data.email,
        password=data.password,
        first_name=data.first_name,
        last_name=data.last_name,
        timezone=data.timezone,
        device_info=device,
    )


@router.post("/login", response_model=AuthResult)
async def login(data: LoginRequest, auth: Auth, device: Device) -> AuthResult:
    return await auth.login_local(data.email, data.password, device_info=device)


@router.post("/refresh", response_model=AuthResult)
async def refresh(data: RefreshRequest, auth: Auth) -> AuthResult:
    return await auth.refresh_access_token(data.refresh_token)


@router.post("/logout", response_model=MessageResponse)
async def logout(session: CurrentSession, auth: Auth) -> MessageResponse:
    await auth.logout(session.session_id)
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=MessageResponse)
async def logout_all(session: CurrentSession, auth: Auth) -> MessageResponse:
    revoked = await auth.logout_all(session.user_id)
    return MessageResponse(message=f"Logged out from {revoked} sessions")


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(data: ForgotPasswordRequest, auth: Auth) -> MessageResponse:
    await auth.request_password_reset(data.email)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(data: ResetPasswordRequest, auth: Auth) -> MessageResponse:
    await auth.reset_password(data.token, data.new_password)
    return MessageResponse(message="Password reset successfully")


@router.get("/me", response_model=MeResponse)
async def me(user: CurrentUser, auth: Auth) -> MeResponse:
    return await auth.describe(user)


# Tuya OAuth


@router.get("/oauth/login", response_model=OAuthLoginResponse)
async def oauth_login(
    oauth: OAuth,
    redirect_uri: Optional[str] = Query(default=None),
) -> OAuthLoginResponse:
    return await oauth.start_login(redirect_uri)


@router.post("/oauth/callback", response_model=AuthResult)
async def oauth_callback(data: OAuthCallbackRequest, oauth: OAuth, device: Device) -> AuthResult:
    return await oauth.handle_callback(
        data.code, data.state, redirect_uri=data.redirect_uri, device_info=device
    )


@router.post("/oauth/refresh", response_model=MessageResponse)
async def oauth_refresh(session: CurrentSession, oauth: OAuth) -> MessageResponse:
    refreshed = await oauth.refresh_provider_token_if_needed(session.user_id)
    return MessageResponse(message="Tuya token refreshed" if refreshed else "Tuya token is still valid")


@router.delete("/oauth/disconnect", response_model=MessageResponse)
async def oauth_disconnect(session: CurrentSession, oauth: OAuth) -> MessageResponse:
    removed = await oauth.disconnect(session.user_id)
    return MessageResponse(
        message="Tuya account disconnected" if removed else "No Tuya account linked"
    )
