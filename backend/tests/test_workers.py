from datetime import timedelta

import pytest

from app.config import Settings
from app.models import User, UserSession
from app.utils.timezone import utc_now
from app.workers.sessions import WorkerSettings, sweep_expired_sessions
from app.workers.settings import get_redis_settings, sweep_minutes


class TestSessionSweepJob:
    @pytest.mark.asyncio
    async def test_sweep_removes_expired_sessions(self, db_session, context, test_user: User):
        db_session.add(
            UserSession(
                session_token="stale-session",
                user_id=test_user.id,
                refresh_token="stale-refresh",
                device_info={},
                expires_at=utc_now() - timedelta(hours=1),
                created_at=utc_now() - timedelta(days=8),
                last_accessed_at=utc_now() - timedelta(days=2),
            )
        )
        await db_session.commit()

        result = await sweep_expired_sessions({"context": context})

        assert result == {"removed": 1}

    @pytest.mark.asyncio
    async def test_sweep_with_nothing_to_do(self, context):
        assert await sweep_expired_sessions({"context": context}) == {"removed": 0}

    def test_worker_registers_cron(self):
        assert sweep_expired_sessions in WorkerSettings.functions
        assert len(WorkerSettings.cron_jobs) == 1


class TestWorkerSettings:
    def test_redis_settings_from_url(self):
        settings = Settings(redis_url="redis://:hunter2@cache.internal:6380/3")
        redis = get_redis_settings(settings)

        assert redis.host == "cache.internal"
        assert redis.port == 6380
        assert redis.database == 3
        assert redis.password == "hunter2"

    def test_redis_settings_defaults(self):
        redis = get_redis_settings(Settings(redis_url="redis://localhost"))
        assert redis.port == 6379
        assert redis.database == 0

    def test_sweep_minutes(self):
        assert sweep_minutes(15) == {0, 15, 30, 45}
        assert sweep_minutes(60) == {0}
