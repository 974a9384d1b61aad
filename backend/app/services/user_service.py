import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import StorageError, ValidationError
from app.models.user import AuthProvider, User, UserAuth
from app.utils.timezone import utc_now

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email.strip().lower()))
        return result.scalar_one_or_none()

    async def get_by_provider(self, provider: AuthProvider, provider_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User)
            .join(UserAuth, UserAuth.user_id == User.id)
            .where(UserAuth.provider == provider.value, UserAuth.provider_id == provider_id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        display_name: str,
        provider: AuthProvider,
        provider_id: str,
        profile: Optional[dict[str, Any]] = None,
        **credentials: Any,
    ) -> User:
        email = email.strip().lower()
        if await self.get_by_email(email) is not None:
            raise ValidationError("User with this email already exists")

        user = User(
            email=email,
            display_name=display_name[:100],
            profile=profile or {},
            auth=[UserAuth(provider=provider.value, provider_id=provider_id, **credentials)],
        )
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValidationError("User with this email already exists") from e
        await self.db.refresh(user)
        logger.info(f"User {user.id} created via {provider.value}")
        return user

    async def upsert_auth(
        self,
        user: User,
        provider: AuthProvider,
        provider_id: str,
        **fields: Any,
    ) -> UserAuth:
        """Replace the user's record for ``provider`` or attach a new one.

        At most one record exists per (user, provider); the matched record is
        rebuilt field by field rather than patched positionally.
        """
        record = user.get_auth(provider)
        if record is None:
            record = UserAuth(provider=provider.value, provider_id=provider_id)
            user.auth.append(record)
        record.provider_id = provider_id
        for name, value in fields.items():
            setattr(record, name, value)
        record.last_login_at = fields.get("last_login_at") or utc_now()
        user.updated_at = utc_now()
        await self._flush("Failed to update user auth")
        return record

    async def update_auth_tokens(
        self,
        user: User,
        provider: AuthProvider,
        access_token: Optional[str],
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
    ) -> None:
        record = user.get_auth(provider)
        if record is None:
            raise ValidationError(f"No {provider.value} credentials linked to this account")
        record.access_token = access_token
        record.refresh_token = refresh_token
        record.token_expires_at = token_expires_at
        user.updated_at = utc_now()
        await self._flush("Failed to update user auth")

    async def remove_auth(self, user: User, provider: AuthProvider) -> bool:
        record = user.get_auth(provider)
        if record is None:
            return False
        user.auth.remove(record)
        user.updated_at = utc_now()
        await self._flush("Failed to remove user auth")
        return True

    async def record_login(self, user: User) -> None:
        """Bump login stats. Best-effort: failures are logged, not raised."""
        now = utc_now()
        try:
            await self.db.execute(
                update(User)
                .where(User.id == user.id)
                .values(login_count=User.login_count + 1, last_login_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to update login stats for user {user.id}: {e}")
            return
        user.login_count = (user.login_count or 0) + 1
        user.last_login_at = now

    async def _flush(self, message: str) -> None:
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"{message}: {e}")
            raise StorageError(message) from e
