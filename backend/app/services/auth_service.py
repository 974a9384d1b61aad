"""Local authentication, session issuance and bearer-token checks."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import AuthenticationError, ForbiddenError, StorageError
from app.models.user import AuthProvider, User
from app.schemas.auth import AuthResult, TokenPayload
from app.schemas.session import DeviceInfo
from app.schemas.user import AuthProviderStatus, MeResponse, UserResponse
from app.services.cache import CacheError
from app.services.session_store import SessionStore
from app.services.user_service import UserService
from app.utils.timezone import ensure_utc, seconds_until, utc_now

if TYPE_CHECKING:
    from app.context import ServiceContext

logger = logging.getLogger(__name__)

PASSWORD_RESET_NAMESPACE = "password-reset"


def is_account_usable(user: User) -> bool:
    return bool(user.is_active) and not user.is_suspended


class AuthService:
    def __init__(self, db: AsyncSession, context: "ServiceContext"):
        self.db = db
        self.settings = context.settings
        self.cache = context.cache
        self.tokens = context.tokens
        self.hasher = context.hasher
        self.users = UserService(db)
        self.sessions = SessionStore(
            db, context.cache, context.tokens, refresh_ttl=self.settings.refresh_token_ttl
        )

    async def register_local(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str = "",
        timezone: str = "UTC",
        device_info: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        display_name = f"{first_name} {last_name}".strip()
        user = await self.users.create(
            email=email,
            display_name=display_name,
            provider=AuthProvider.local,
            provider_id=email.strip().lower(),
            profile={"first_name": first_name, "last_name": last_name or None, "timezone": timezone},
            access_token=password_hash,
            last_login_at=utc_now(),
        )
        return await self.complete_authentication(user, device_info)

    async def login_local(
        self, email: str, password: str, device_info: Optional[DeviceInfo] = None
    ) -> AuthResult:
        user = await self.users.get_by_email(email)
        if user is None:
            raise AuthenticationError("Invalid credentials")

        local_auth = user.get_auth(AuthProvider.local)
        if local_auth is None:
            raise AuthenticationError("Local authentication not available for this account")

        if not await asyncio.to_thread(self.hasher.verify, password, local_auth.access_token):
            raise AuthenticationError("Invalid credentials")

        if not is_account_usable(user):
            raise AuthenticationError("Account is deactivated or suspended")

        return await self.complete_authentication(user, device_info)

    async def complete_authentication(
        self, user: User, device_info: Optional[DeviceInfo] = None
    ) -> AuthResult:
        created = await self.sessions.create(user.id, device_info)
        session = created.value
        if created.degraded:
            logger.warning(f"Session for user {user.id} created without cache ({created.warnings})")

        token = self._sign(user, session.session_token)
        await self.users.record_login(user)
        await self.invalidate_user_cache(user.id)

        logger.info(f"Authentication completed for user {user.id}")
        return AuthResult(
            user=UserResponse.model_validate(user),
            token=token,
            refresh_token=session.refresh_token,
            session_id=session.session_token,
            expires_in=self.settings.access_token_ttl,
        )

    async def refresh_access_token(self, refresh_token: str) -> AuthResult:
        session = await self.sessions.find_by_refresh_token(refresh_token)
        if session is None:
            raise AuthenticationError("Invalid refresh token", code="INVALID_REFRESH_TOKEN")

        if seconds_until(session.expires_at) <= 0:
            await self.sessions.revoke(session.session_token)
            raise AuthenticationError("Refresh token expired", code="REFRESH_TOKEN_EXPIRED")

        user = await self.users.get_by_id(session.user_id)
        if user is None:
            raise AuthenticationError("User not found", code="USER_NOT_FOUND")
        if not is_account_usable(user):
            raise AuthenticationError("Account is deactivated or suspended")

        rotated = await self.sessions.rotate_refresh(session.session_token, refresh_token)
        if rotated is None:
            raise AuthenticationError("Refresh token has already been used", code="INVALID_REFRESH_TOKEN")

        logger.info(f"Access token refreshed for user {user.id}")
        return AuthResult(
            user=UserResponse.model_validate(user),
            token=self._sign(user, session.session_token),
            refresh_token=rotated.value.refresh_token,
            session_id=session.session_token,
            expires_in=self.settings.access_token_ttl,
        )

    async def authenticate(self, token: str) -> tuple[User, TokenPayload]:
        """Resolve a bearer token to its user; the session must still be live."""
        validation = self.tokens.validate(token)
        if not validation.valid or validation.payload is None:
            if validation.expired:
                raise AuthenticationError("Token expired", code="TOKEN_EXPIRED")
            raise AuthenticationError("Invalid authentication token", code="INVALID_TOKEN")
        payload = validation.payload

        session = await self.sessions.get(payload.session_id)
        if session is None or session.user_id != payload.user_id:
            raise AuthenticationError("Session invalid or expired", code="SESSION_INVALID")

        user = await self.users.get_by_id(payload.user_id)
        if user is None:
            raise AuthenticationError("User not found", code="USER_NOT_FOUND")
        if not is_account_usable(user):
            raise ForbiddenError("Account is deactivated or suspended")

        await self.sessions.touch(payload.session_id)
        return user, payload

    async def logout(self, session_id: str) -> None:
        await self.sessions.revoke(session_id)

    async def logout_all(self, user_id: UUID) -> int:
        result = await self.sessions.revoke_all_for_user(user_id)
        return result.value

    # Transient tokens (password reset and similar one-off secrets)

    async def put_transient_token(self, namespace: str, data: dict[str, Any], ttl_seconds: int) -> str:
        token = self.tokens.generate_opaque_secret(32)
        try:
            await self.cache.set(f"{namespace}:{token}", data, ttl_seconds)
        except CacheError as e:
            raise StorageError("Failed to store token") from e
        return token

    async def get_transient_token(
        self, namespace: str, token: str, consume: bool = False
    ) -> Optional[dict[str, Any]]:
        key = f"{namespace}:{token}"
        if consume:
            return await self.cache.pop(key)
        return await self.cache.get(key)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token; returns None (silently) for unknown emails."""
        user = await self.users.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return None

        ttl = self.settings.password_reset_ttl
        expires_at = utc_now() + timedelta(seconds=ttl)
        token = await self.put_transient_token(
            PASSWORD_RESET_NAMESPACE,
            {"user_id": str(user.id), "email": user.email, "expires_at": expires_at.isoformat()},
            ttl,
        )
        # TODO: hand the token to the mail service once outbound email exists
        logger.info(f"Password reset token issued for user {user.id}")
        return token

    async def reset_password(self, token: str, new_password: str) -> None:
        data = await self.get_transient_token(PASSWORD_RESET_NAMESPACE, token, consume=True)
        if data is None:
            raise AuthenticationError("Invalid or expired reset token")

        if seconds_until(ensure_utc(datetime.fromisoformat(data["expires_at"]))) <= 0:
            raise AuthenticationError("Reset token has expired")

        user = await self.users.get_by_id(UUID(data["user_id"]))
        if user is None:
            raise AuthenticationError("User not found")

        local_auth = user.get_auth(AuthProvider.local)
        if local_auth is None:
            raise AuthenticationError("Unable to reset password for this account")

        local_auth.access_token = await asyncio.to_thread(self.hasher.hash, new_password)
        user.updated_at = utc_now()
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError("Failed to update password") from e

        await self.sessions.revoke_all_for_user(user.id)
        await self.invalidate_user_cache(user.id)
        logger.info(f"Password reset completed for user {user.id}")

    # Profile view

    async def get_user_profile(self, user: User) -> UserResponse:
        cached = await self.cache.get_user_profile(str(user.id))
        if cached is not None:
            try:
                return UserResponse.model_validate(cached)
            except ValueError:
                logger.warning(f"Ignoring malformed cached profile for user {user.id}")

        profile = UserResponse.model_validate(user)
        try:
            await self.cache.cache_user_profile(
                str(user.id), profile.model_dump(mode="json"), self.settings.cache_ttl_user_profile
            )
        except CacheError:
            logger.warning(f"Profile for user {user.id} not cached")
        return profile

    async def describe(self, user: User) -> MeResponse:
        now = utc_now()
        statuses = [
            AuthProviderStatus(
                provider=record.provider,
                connected=bool(record.access_token)
                and (record.token_expires_at is None or ensure_utc(record.token_expires_at) > now),
                last_login_at=record.last_login_at,
            )
            for record in user.auth
        ]
        return MeResponse(
            user=await self.get_user_profile(user),
            provider_connected=any(
                s.connected for s in statuses if s.provider == AuthProvider.tuya.value
            ),
            auth_providers=statuses,
        )

    async def invalidate_user_cache(self, user_id: UUID) -> None:
        try:
            await self.cache.invalidate_user_cache(str(user_id))
        except CacheError:
            logger.warning(f"Could not invalidate cached profile for user {user_id}")

    def _sign(self, user: User, session_id: str) -> str:
        return self.tokens.sign(
            TokenPayload(user_id=user.id, session_id=session_id, email=user.email, role=user.role)
        )
