import json
import logging
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.exceptions import StorageError

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:"
USER_PROFILE_PREFIX = "user:profile:"


class CacheError(StorageError):
    default_code = "CACHE_ERROR"


class CacheManager:
    """JSON key/value cache on Redis.

    Reads swallow Redis failures and behave like a miss. Writes and deletes
    raise ``CacheError`` so callers decide whether the failure matters.
    """

    def __init__(self, client: Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "CacheManager":
        return cls(Redis.from_url(url, decode_responses=True))

    async def connect(self) -> None:
        await self.client.ping()
        logger.info("Connected to Redis")

    async def disconnect(self) -> None:
        await self.client.aclose()
        logger.info("Redis connection closed")

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.error(f"Cache get failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl_seconds)
        except RedisError as e:
            logger.error(f"Cache set failed for {key}: {e}")
            raise CacheError(f"Failed to set cache value {key}") from e

    async def pop(self, key: str) -> Optional[Any]:
        """Atomically read and delete a key; a second caller always gets None."""
        try:
            raw = await self.client.getdel(key)
        except RedisError as e:
            logger.error(f"Cache getdel failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self.client.delete(*keys)
        except RedisError as e:
            logger.error(f"Cache delete failed for {keys}: {e}")
            raise CacheError("Failed to delete cache value") from e

    async def ttl(self, key: str) -> int:
        try:
            return await self.client.ttl(key)
        except RedisError:
            return -2

    # Sessions

    async def set_session(self, session_id: str, data: dict[str, Any], ttl_seconds: int) -> None:
        await self.set(f"{SESSION_PREFIX}{session_id}", data, ttl_seconds)

    async def get_session(self, session_id: str) -> Optional[dict[str, Any]]:
        return await self.get(f"{SESSION_PREFIX}{session_id}")

    async def delete_session(self, session_id: str) -> None:
        await self.delete(f"{SESSION_PREFIX}{session_id}")

    # User profiles

    async def cache_user_profile(self, user_id: str, profile: dict[str, Any], ttl_seconds: int) -> None:
        await self.set(f"{USER_PROFILE_PREFIX}{user_id}", profile, ttl_seconds)

    async def get_user_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        return await self.get(f"{USER_PROFILE_PREFIX}{user_id}")

    async def invalidate_user_cache(self, user_id: str) -> None:
        await self.delete(f"{USER_PROFILE_PREFIX}{user_id}")
