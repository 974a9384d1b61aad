from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.context import ServiceContext
from app.database import get_db
from app.exceptions import AuthenticationError
from app.models.user import User
from app.schemas.auth import AuthSession
from app.schemas.session import DeviceInfo
from app.services.auth_service import AuthService
from app.services.oauth_service import OAuthService

# HTTP Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

_BROWSERS = (
    ("Edg/", "Edge"),
    ("Chrome/", "Chrome"),
    ("Firefox/", "Firefox"),
    ("Safari/", "Safari"),
)
_PLATFORMS = (
    ("Windows", "windows"),
    ("Android", "android"),
    ("iPhone", "ios"),
    ("iPad", "ios"),
    ("Mac OS", "macos"),
    ("Linux", "linux"),
)


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def get_auth_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[ServiceContext, Depends(get_context)],
) -> AuthService:
    return AuthService(db, context)


def get_oauth_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    context: Annotated[ServiceContext, Depends(get_context)],
    auth: Annotated[AuthService, Depends(get_auth_service)],
) -> OAuthService:
    return OAuthService(db, context, auth=auth)


def get_device_info(request: Request) -> DeviceInfo:
    """Best-guess device description from the request headers."""
    user_agent = request.headers.get("user-agent")
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else None
    if not ip_address and request.client:
        ip_address = request.client.host

    platform = "unknown"
    browser = None
    if user_agent:
        platform = next((name for marker, name in _PLATFORMS if marker in user_agent), "unknown")
        browser = next((name for marker, name in _BROWSERS if marker in user_agent), None)

    return DeviceInfo(user_agent=user_agent, ip_address=ip_address, platform=platform, browser=browser)


async def get_current_session(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
    auth: Annotated[AuthService, Depends(get_auth_service)],
) -> AuthSession:
    """Authenticate the bearer token and stash the user on the request."""
    if not credentials:
        raise AuthenticationError("Authentication required", code="MISSING_TOKEN")

    user, payload = await auth.authenticate(credentials.credentials)
    request.state.user = user
    return AuthSession(
        user_id=user.id,
        session_id=payload.session_id,
        email=user.email,
        display_name=user.display_name,
        role=user.role,
    )


async def get_current_user(
    request: Request,
    session: Annotated[AuthSession, Depends(get_current_session)],
) -> User:
    return request.state.user


# Type aliases for dependency injection
Context = Annotated[ServiceContext, Depends(get_context)]
Auth = Annotated[AuthService, Depends(get_auth_service)]
OAuth = Annotated[OAuthService, Depends(get_oauth_service)]
Device = Annotated[DeviceInfo, Depends(get_device_info)]
CurrentSession = Annotated[AuthSession, Depends(get_current_session)]
CurrentUser = Annotated[User, Depends(get_current_user)]
