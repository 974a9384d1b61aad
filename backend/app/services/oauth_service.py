import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import AuthenticationError, ExternalApiError, NotFoundError, StorageError
from app.models.user import AuthProvider, User
from app.schemas.auth import AuthResult
from app.schemas.oauth import OAuthLoginResponse, ProviderProfile, ProviderTokenResponse
from app.schemas.session import DeviceInfo
from app.services.auth_service import AuthService, is_account_usable
from app.services.tuya_oauth import TuyaOAuthClient
from app.services.user_service import UserService
from app.utils.timezone import map_tuya_timezone, seconds_until, utc_now

if TYPE_CHECKING:
    from app.context import ServiceContext

logger = logging.getLogger(__name__)

# Provider tokens are refreshed once they are this close to expiry.
REFRESH_THRESHOLD_SECONDS = 5 * 60
FALLBACK_DISPLAY_NAME = "Tuya User"


def profile_from_provider(profile: ProviderProfile) -> dict:
    display_name = profile.nick_name or profile.username or FALLBACK_DISPLAY_NAME
    first, _, rest = display_name.partition(" ")
    return {
        "first_name": first,
        "last_name": rest or None,
        "avatar": profile.avatar_url,
        "timezone": map_tuya_timezone(profile.time_zone_id),
        "phone_number": profile.mobile,
        "country": profile.country_code,
    }


class OAuthService:
    """Tuya authorization-code login and provider token upkeep."""

    def __init__(self, db: AsyncSession, context: "ServiceContext", auth: Optional[AuthService] = None):
        self.db = db
        self.settings = context.settings
        self.states = context.oauth_states
        self._client = context.oauth_client
        self.auth = auth or AuthService(db, context)
        self.users = UserService(db)

    @property
    def client(self) -> TuyaOAuthClient:
        if self._client is None:
            raise ExternalApiError("Tuya OAuth is not configured", 503)
        return self._client

    async def start_login(self, redirect_uri: Optional[str] = None) -> OAuthLoginResponse:
        client = self.client
        redirect_uri = redirect_uri or client.redirect_uri
        record = await self.states.issue(redirect_uri)
        return OAuthLoginResponse(
            auth_url=client.build_authorization_url(record.state, redirect_uri=redirect_uri),
            state=record.state,
        )

    async def handle_callback(
        self,
        code: str,
        state: str,
        redirect_uri: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        client = self.client
        if not code:
            raise AuthenticationError("Missing authorization code")

        # Consumed before any network call; a bad state never reaches the provider.
        record = await self.states.consume(state, redirect_uri)

        tokens = await client.exchange_code(code, redirect_uri or record.redirect_uri)
        profile = await client.fetch_profile(tokens.access_token)
        user = await self.sync_user(profile, tokens)

        if not is_account_usable(user):
            raise AuthenticationError("Account is deactivated or suspended")

        logger.info(f"Tuya login for user {user.id} (uid {profile.uid})")
        return await self.auth.complete_authentication(user, device_info)

    async def sync_user(self, profile: ProviderProfile, tokens: ProviderTokenResponse) -> User:
        """Find the user by provider id, then by email, else create one."""
        now = utc_now()
        credentials = {
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "token_expires_at": now + timedelta(seconds=tokens.expires_in),
            "last_login_at": now,
        }

        user = await self.users.get_by_provider(AuthProvider.tuya, profile.uid)
        if user is None and profile.email:
            user = await self.users.get_by_email(profile.email)
            if user is not None:
                logger.info(f"Linking Tuya account {profile.uid} to existing user {user.id}")

        if user is not None:
            await self.users.upsert_auth(user, AuthProvider.tuya, profile.uid, **credentials)
        else:
            user = await self.users.create(
                email=profile.email or f"{profile.uid}@tuya.local",
                display_name=profile.nick_name or profile.username or FALLBACK_DISPLAY_NAME,
                provider=AuthProvider.tuya,
                provider_id=profile.uid,
                profile=profile_from_provider(profile),
                **credentials,
            )
            user.email_verified = bool(profile.email)

        await self._commit("Failed to save Tuya account")
        return user

    async def refresh_provider_token_if_needed(self, user_id: UUID) -> bool:
        """Refresh the stored Tuya token if it expires within five minutes.

        Returns True when a refresh happened.
        """
        user = await self._require_user(user_id)
        record = user.get_auth(AuthProvider.tuya)
        if record is None or not record.refresh_token:
            raise AuthenticationError("No Tuya refresh token found")

        if record.token_expires_at is not None and (
            seconds_until(record.token_expires_at) > REFRESH_THRESHOLD_SECONDS
        ):
            return False

        tokens = await self.client.refresh_token(record.refresh_token)
        await self.users.update_auth_tokens(
            user,
            AuthProvider.tuya,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=utc_now() + timedelta(seconds=tokens.expires_in),
        )
        await self._commit("Failed to save refreshed Tuya token")
        await self.auth.invalidate_user_cache(user.id)
        logger.info(f"Tuya token refreshed for user {user.id}")
        return True

    async def get_provider_access_token(self, user_id: UUID) -> str:
        """Current Tuya access token for device adapters, refreshed first if stale."""
        await self.refresh_provider_token_if_needed(user_id)
        user = await self._require_user(user_id)
        record = user.get_auth(AuthProvider.tuya)
        if record is None or not record.access_token:
            raise AuthenticationError("No Tuya access token found")
        return record.access_token

    async def disconnect(self, user_id: UUID) -> bool:
        """Unlink Tuya. The remote revoke is best-effort; local removal always happens."""
        user = await self._require_user(user_id)
        record = user.get_auth(AuthProvider.tuya)
        if record is None:
            return False

        if record.access_token and self._client is not None:
            try:
                await self._client.revoke(record.access_token)
            except ExternalApiError as e:
                logger.warning(f"Tuya token revoke failed for user {user.id}, continuing: {e}")

        await self.users.remove_auth(user, AuthProvider.tuya)
        await self._commit("Failed to disconnect Tuya account")
        await self.auth.invalidate_user_cache(user.id)
        logger.info(f"Tuya account disconnected for user {user.id}")
        return True

    async def _require_user(self, user_id: UUID) -> User:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _commit(self, message: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"{message}: {e}")
            raise StorageError(message) from e
