import asyncio
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.context import ServiceContext
from app.exceptions import StorageError
from app.models import User, UserSession
from app.schemas.session import DeviceInfo
from app.services.session_store import SessionStore
from app.utils.timezone import utc_now


def make_store(db: AsyncSession, context: ServiceContext, refresh_ttl: int = 3600) -> SessionStore:
    return SessionStore(db, context.cache, context.tokens, refresh_ttl=refresh_ttl)


async def count_rows(db: AsyncSession, session_id: str) -> int:
    result = await db.execute(select(UserSession).where(UserSession.session_token == session_id))
    return len(result.scalars().all())


def break_cache_writes(monkeypatch, context: ServiceContext) -> None:
    async def failing(*args, **kwargs):
        raise RedisConnectionError("redis unavailable")

    monkeypatch.setattr(context.cache.client, "set", failing)
    monkeypatch.setattr(context.cache.client, "delete", failing)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_writes_both_layers(self, db_session, context, test_user: User):
        store = make_store(db_session, context)
        result = await store.create(test_user.id, DeviceInfo(platform="linux", browser="Firefox"))
        session = result.value

        assert result.degraded is False
        assert len(session.session_token) == 64
        assert len(session.refresh_token) == 128
        assert session.device_info.browser == "Firefox"
        assert await context.cache.get_session(session.session_token) is not None
        assert 3590 <= await context.cache.ttl(f"session:{session.session_token}") <= 3600
        assert await count_rows(db_session, session.session_token) == 1

    @pytest.mark.asyncio
    async def test_cache_failure_is_degraded_not_fatal(
        self, db_session, context, test_user: User, monkeypatch
    ):
        break_cache_writes(monkeypatch, context)
        store = make_store(db_session, context)

        result = await store.create(test_user.id)

        assert result.degraded is True
        assert result.warnings == ["cache"]
        assert await count_rows(db_session, result.value.session_token) == 1
        # still readable through the database
        assert await store.get(result.value.session_token) is not None

    @pytest.mark.asyncio
    async def test_database_failure_is_fatal(
        self, db_session, context, test_user: User, monkeypatch
    ):
        user_id = test_user.id
        store = make_store(db_session, context)

        async def failing_commit():
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(db_session, "commit", failing_commit)
        with pytest.raises(StorageError):
            await store.create(user_id)
        monkeypatch.undo()

        assert await store.list_for_user(user_id) == []
        assert await context.cache.client.keys("session:*") == []


class TestGet:
    @pytest.mark.asyncio
    async def test_cache_miss_falls_back_and_recaches(self, db_session, context, test_user: User):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value
        await context.cache.delete_session(session.session_token)

        loaded = await store.get(session.session_token)

        assert loaded is not None
        assert loaded.refresh_token == session.refresh_token
        assert await context.cache.get_session(session.session_token) is not None

    @pytest.mark.asyncio
    async def test_unknown_session(self, db_session, context):
        assert await make_store(db_session, context).get("missing") is None

    @pytest.mark.asyncio
    async def test_cache_read_failure_falls_back_to_database(
        self, db_session, context, test_user: User, monkeypatch
    ):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value

        async def failing_get(*args, **kwargs):
            raise RedisConnectionError("redis unavailable")

        monkeypatch.setattr(context.cache.client, "get", failing_get)

        loaded = await store.get(session.session_token)

        assert loaded is not None
        assert loaded.refresh_token == session.refresh_token

    @pytest.mark.asyncio
    async def test_expired_session_is_removed_from_both_layers(
        self, db_session, context, test_user: User
    ):
        store = make_store(db_session, context, refresh_ttl=1)
        session = (await store.create(test_user.id)).value
        # a stale cache entry that outlives the session
        await context.cache.set_session(
            session.session_token, session.model_dump(mode="json"), 60
        )

        await asyncio.sleep(2)

        assert await store.get(session.session_token) is None
        assert await context.cache.get_session(session.session_token) is None
        assert await count_rows(db_session, session.session_token) == 0


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_removes_session(self, db_session, context, test_user: User):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value

        await store.revoke(session.session_token)

        assert await store.get(session.session_token) is None
        assert await context.cache.get_session(session.session_token) is None
        assert await count_rows(db_session, session.session_token) == 0

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, db_session, context, test_user: User):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value

        await store.revoke(session.session_token)
        result = await store.revoke(session.session_token)

        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_revoke_with_cache_down_is_degraded(
        self, db_session, context, test_user: User, monkeypatch
    ):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value
        break_cache_writes(monkeypatch, context)

        result = await store.revoke(session.session_token)

        assert result.degraded is True
        assert await count_rows(db_session, session.session_token) == 0

    @pytest.mark.asyncio
    async def test_revoke_all_for_user(self, db_session, context, test_user: User):
        store = make_store(db_session, context)
        sessions = [(await store.create(test_user.id)).value for _ in range(3)]

        result = await store.revoke_all_for_user(test_user.id)

        assert result.value == 3
        for session in sessions:
            assert await store.get(session.session_token) is None
        assert await store.list_for_user(test_user.id) == []


class TestRotateRefresh:
    @pytest.mark.asyncio
    async def test_rotation_replaces_refresh_token(self, db_session, context, test_user: User):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value

        rotated = await store.rotate_refresh(session.session_token, session.refresh_token)

        assert rotated is not None
        assert rotated.value.refresh_token != session.refresh_token
        assert rotated.value.expires_at >= session.expires_at
        assert await store.find_by_refresh_token(session.refresh_token) is None
        found = await store.find_by_refresh_token(rotated.value.refresh_token)
        assert found.session_token == session.session_token

        cached = await context.cache.get_session(session.session_token)
        assert cached["refresh_token"] == rotated.value.refresh_token

    @pytest.mark.asyncio
    async def test_second_rotation_with_same_token_fails(
        self, db_session, context, test_user: User
    ):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value

        # both callers looked the session up before either rotated
        first_snapshot = await store.find_by_refresh_token(session.refresh_token)
        second_snapshot = await store.find_by_refresh_token(session.refresh_token)

        first = await store.rotate_refresh(first_snapshot.session_token, session.refresh_token)
        second = await store.rotate_refresh(second_snapshot.session_token, session.refresh_token)

        assert first is not None
        assert second is None
        current = await store.find_by_refresh_token(first.value.refresh_token)
        assert current is not None


class TestTouchAndSweep:
    @pytest.mark.asyncio
    async def test_touch_updates_last_accessed(self, db_session, context, test_user: User):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value
        await asyncio.sleep(0.01)

        result = await store.touch(session.session_token)

        assert result.degraded is False
        touched = await store.get(session.session_token)
        assert touched.last_accessed_at > session.last_accessed_at

    @pytest.mark.asyncio
    async def test_touch_with_cache_down_is_degraded(
        self, db_session, context, test_user: User, monkeypatch
    ):
        store = make_store(db_session, context)
        session = (await store.create(test_user.id)).value
        break_cache_writes(monkeypatch, context)

        result = await store.touch(session.session_token)

        assert result.degraded is True
        assert result.warnings == ["cache"]

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, db_session, context, test_user: User):
        store = make_store(db_session, context)
        live = (await store.create(test_user.id)).value
        db_session.add(
            UserSession(
                session_token="expired-session",
                user_id=test_user.id,
                refresh_token="expired-refresh",
                device_info={},
                expires_at=utc_now() - timedelta(minutes=5),
                created_at=utc_now() - timedelta(days=8),
                last_accessed_at=utc_now() - timedelta(days=1),
            )
        )
        await db_session.commit()

        removed = await store.sweep_expired()

        assert removed == 1
        assert await count_rows(db_session, "expired-session") == 0
        assert await count_rows(db_session, live.session_token) == 1
