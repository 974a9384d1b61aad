import logging
from dataclasses import dataclass
from typing import Optional

from app.config import Settings
from app.database import Database
from app.services.cache import CacheManager
from app.services.oauth_state import OAuthStateStore
from app.services.tuya_oauth import TuyaOAuthClient
from app.utils.passwords import PasswordHasher
from app.utils.tokens import TokenService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Process-lifetime collaborators, built once at startup and injected per request."""

    settings: Settings
    database: Database
    cache: CacheManager
    tokens: TokenService
    hasher: PasswordHasher
    oauth_states: OAuthStateStore
    oauth_client: Optional[TuyaOAuthClient] = None

    async def connect(self) -> None:
        await self.cache.connect()
        await self.database.ping()
        logger.info("Service context ready (providers: %s)", ", ".join(self.settings.enabled_providers()))

    async def close(self) -> None:
        if self.oauth_client is not None:
            await self.oauth_client.aclose()
        await self.cache.disconnect()
        await self.database.dispose()


def build_context(
    settings: Settings,
    database: Optional[Database] = None,
    cache: Optional[CacheManager] = None,
    oauth_client: Optional[TuyaOAuthClient] = None,
) -> ServiceContext:
    cache = cache or CacheManager.from_url(str(settings.redis_url))
    if oauth_client is None and settings.tuya_configured():
        oauth_client = TuyaOAuthClient(
            client_id=settings.tuya_client_id,
            client_secret=settings.tuya_client_secret,
            base_url=settings.tuya_base_url,
            redirect_uri=settings.tuya_redirect_uri,
            scope=settings.tuya_scope,
            timeout=settings.tuya_timeout,
        )
    return ServiceContext(
        settings=settings,
        database=database or Database(str(settings.database_url), echo=settings.database_echo),
        cache=cache,
        tokens=TokenService(
            secret_key=settings.secret_key,
            expires_in=settings.access_token_ttl,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        ),
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        oauth_states=OAuthStateStore(cache, ttl_seconds=settings.oauth_state_ttl),
        oauth_client=oauth_client,
    )
