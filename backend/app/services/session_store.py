import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Generic, Optional, TypeVar
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import StorageError
from app.models.session import UserSession
from app.schemas.session import DeviceInfo, SessionData
from app.services.cache import CacheError, CacheManager
from app.utils.timezone import seconds_until, utc_now
from app.utils.tokens import TokenService

logger = logging.getLogger(__name__)

T = TypeVar("T")

SESSION_TOKEN_BYTES = 32
REFRESH_TOKEN_BYTES = 64


@dataclass
class WriteResult(Generic[T]):
    """Outcome of a write that touched both stores.

    ``warnings`` lists best-effort steps (cache writes) that failed; the
    database write, which is the source of truth, succeeded.
    """

    value: T
    warnings: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)


def _short(token: str) -> str:
    return f"{token[:8]}..."


class SessionStore:
    """Sessions in the database with a Redis read-through/write-through cache.

    Lifecycle: created -> active (touch/rotate) -> expired (noticed on read)
    or revoked. The database is authoritative; every cache entry can be
    rebuilt from it and carries a TTL equal to the session's remaining life.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: CacheManager,
        tokens: TokenService,
        refresh_ttl: int,
    ):
        self.db = db
        self.cache = cache
        self.tokens = tokens
        self.refresh_ttl = refresh_ttl

    async def create(
        self, user_id: UUID, device_info: Optional[DeviceInfo] = None
    ) -> WriteResult[SessionData]:
        now = utc_now()
        record = UserSession(
            session_token=self.tokens.generate_opaque_secret(SESSION_TOKEN_BYTES),
            user_id=user_id,
            refresh_token=self.tokens.generate_opaque_secret(REFRESH_TOKEN_BYTES),
            device_info=(device_info or DeviceInfo()).model_dump(),
            expires_at=now + timedelta(seconds=self.refresh_ttl),
            created_at=now,
            last_accessed_at=now,
        )
        try:
            self.db.add(record)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to persist session for user {user_id}: {e}")
            raise StorageError("Failed to create session") from e

        session = SessionData.model_validate(record)
        result = WriteResult(value=session)
        await self._cache_session(session, result)
        logger.info(f"Session {_short(session.session_token)} created for user {user_id}")
        return result

    async def get(self, session_id: str) -> Optional[SessionData]:
        session: Optional[SessionData] = None
        cached = await self.cache.get_session(session_id)
        if cached is not None:
            try:
                session = SessionData.model_validate(cached)
            except ValueError:
                logger.warning(f"Ignoring malformed cached session {_short(session_id)}")

        if session is None:
            record = await self._load(session_id)
            if record is None:
                return None
            session = SessionData.model_validate(record)
            if seconds_until(session.expires_at) > 0:
                await self._cache_session(session)

        if seconds_until(session.expires_at) <= 0:
            logger.info(f"Session {_short(session_id)} expired")
            await self.revoke(session_id)
            return None

        return session

    async def find_by_refresh_token(self, refresh_token: str) -> Optional[SessionData]:
        result = await self.db.execute(
            select(UserSession)
            .where(UserSession.refresh_token == refresh_token)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        return SessionData.model_validate(record) if record else None

    async def list_for_user(self, user_id: UUID) -> list[SessionData]:
        result = await self.db.execute(
            select(UserSession)
            .where(UserSession.user_id == user_id)
            .order_by(UserSession.last_accessed_at.desc())
        )
        return [SessionData.model_validate(r) for r in result.scalars().all()]

    async def touch(self, session_id: str) -> WriteResult[None]:
        """Best-effort bump of ``last_accessed_at``; never raises."""
        result: WriteResult[None] = WriteResult(value=None)
        now = utc_now()
        try:
            await self.db.execute(
                update(UserSession)
                .where(UserSession.session_token == session_id)
                .values(last_accessed_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to update access time for session {_short(session_id)}: {e}")
            result.warnings.append("database")

        cached = await self.cache.get_session(session_id)
        if cached is not None:
            try:
                session = SessionData.model_validate(cached)
            except ValueError:
                return result
            await self._cache_session(session.model_copy(update={"last_accessed_at": now}), result)
        return result

    async def rotate_refresh(
        self, session_id: str, previous_refresh_token: str
    ) -> Optional[WriteResult[SessionData]]:
        """Swap in a new refresh token and expiry.

        The update only matches while the stored refresh token still equals
        ``previous_refresh_token``; returns None when another caller rotated
        first (or the session is gone), so a token can be redeemed once.
        """
        now = utc_now()
        new_token = self.tokens.generate_opaque_secret(REFRESH_TOKEN_BYTES)
        try:
            outcome = await self.db.execute(
                update(UserSession)
                .where(
                    UserSession.session_token == session_id,
                    UserSession.refresh_token == previous_refresh_token,
                )
                .values(
                    refresh_token=new_token,
                    expires_at=now + timedelta(seconds=self.refresh_ttl),
                    last_accessed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount != 1:
                await self.db.rollback()
                logger.warning(f"Refresh token for session {_short(session_id)} was already rotated")
                return None
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to rotate refresh token for session {_short(session_id)}: {e}")
            raise StorageError("Failed to rotate refresh token") from e

        record = await self._load(session_id)
        if record is None:
            return None
        session = SessionData.model_validate(record)
        result = WriteResult(value=session)
        await self._cache_session(session, result)
        return result

    async def revoke(self, session_id: str) -> WriteResult[None]:
        """Delete from both layers. Revoking an unknown session is a no-op."""
        try:
            await self.db.execute(
                delete(UserSession)
                .where(UserSession.session_token == session_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to revoke session {_short(session_id)}: {e}")
            raise StorageError("Failed to invalidate session") from e

        result: WriteResult[None] = WriteResult(value=None)
        await self._uncache_session(session_id, result)
        logger.info(f"Session {_short(session_id)} revoked")
        return result

    async def revoke_all_for_user(self, user_id: UUID) -> WriteResult[int]:
        try:
            rows = await self.db.execute(
                select(UserSession.session_token).where(UserSession.user_id == user_id)
            )
            session_ids = list(rows.scalars().all())
            await self.db.execute(
                delete(UserSession)
                .where(UserSession.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to revoke sessions for user {user_id}: {e}")
            raise StorageError("Failed to invalidate user sessions") from e

        result = WriteResult(value=len(session_ids))
        for session_id in session_ids:
            await self._uncache_session(session_id, result)
        logger.info(f"Revoked {len(session_ids)} sessions for user {user_id}")
        return result

    async def sweep_expired(self) -> int:
        """Remove expired rows; cache entries expire on their own TTL."""
        try:
            outcome = await self.db.execute(
                delete(UserSession)
                .where(UserSession.expires_at < utc_now())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Expired session sweep failed: {e}")
            raise StorageError("Failed to sweep expired sessions") from e

        removed = outcome.rowcount or 0
        if removed:
            logger.info(f"Swept {removed} expired sessions")
        return removed

    async def _load(self, session_id: str) -> Optional[UserSession]:
        result = await self.db.execute(
            select(UserSession)
            .where(UserSession.session_token == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _cache_session(
        self, session: SessionData, result: Optional[WriteResult] = None
    ) -> None:
        ttl = seconds_until(session.expires_at)
        if ttl <= 0:
            return
        try:
            await self.cache.set_session(session.session_token, session.model_dump(mode="json"), ttl)
        except CacheError:
            logger.warning(f"Session {_short(session.session_token)} not cached; database copy remains valid")
            if result is not None:
                result.warnings.append("cache")

    async def _uncache_session(self, session_id: str, result: WriteResult) -> None:
        try:
            await self.cache.delete_session(session_id)
        except CacheError:
            logger.warning(f"Could not evict session {_short(session_id)} from cache")
            result.warnings.append("cache")
