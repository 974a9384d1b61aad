import logging
import secrets
import time

from app.exceptions import ValidationError
from app.schemas.oauth import OAuthState
from app.services.cache import CacheManager

logger = logging.getLogger(__name__)

STATE_PREFIX = "oauth:state:"
DEFAULT_STATE_TTL = 600  # 10 minutes


class OAuthStateStore:
    """Single-use CSRF state for the provider authorization round trip."""

    def __init__(self, cache: CacheManager, ttl_seconds: int = DEFAULT_STATE_TTL):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def issue(self, redirect_uri: str) -> OAuthState:
        record = OAuthState(
            state=secrets.token_hex(32),
            redirect_uri=redirect_uri,
            nonce=secrets.token_hex(16),
            timestamp=int(time.time() * 1000),
        )
        # Without a stored state the callback can never succeed, so this write is required.
        await self.cache.set(f"{STATE_PREFIX}{record.state}", record.model_dump(), self.ttl_seconds)
        logger.info(f"Issued OAuth state {record.state[:8]}... for {redirect_uri}")
        return record

    async def consume(self, state: str, redirect_uri: str | None = None) -> OAuthState:
        if not state:
            raise ValidationError("Missing state parameter")

        raw = await self.cache.pop(f"{STATE_PREFIX}{state}")
        if raw is None:
            raise ValidationError("Invalid or expired state parameter")

        record = OAuthState.model_validate(raw)
        age_ms = int(time.time() * 1000) - record.timestamp
        if age_ms > self.ttl_seconds * 1000:
            raise ValidationError("State parameter expired")

        if redirect_uri and record.redirect_uri != redirect_uri:
            raise ValidationError("Redirect URI mismatch")

        return record
