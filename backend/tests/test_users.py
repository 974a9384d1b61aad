import pytest

from app.exceptions import ValidationError
from app.models import AuthProvider, User
from app.services.user_service import UserService


class TestUserService:
    """Tests for user records and per-provider credentials."""

    @pytest.mark.asyncio
    async def test_get_by_email_is_case_insensitive(self, db_session, test_user: User):
        service = UserService(db_session)
        found = await service.get_by_email(test_user.email.upper())
        assert found is not None
        assert found.id == test_user.id

    @pytest.mark.asyncio
    async def test_create_rejects_duplicate_email(self, db_session, test_user: User):
        service = UserService(db_session)
        with pytest.raises(ValidationError):
            await service.create(
                email=test_user.email,
                display_name="Someone Else",
                provider=AuthProvider.local,
                provider_id=test_user.email,
            )

    @pytest.mark.asyncio
    async def test_get_by_provider(self, db_session, test_user: User):
        service = UserService(db_session)
        await service.upsert_auth(test_user, AuthProvider.tuya, "uid-1", access_token="a")
        await db_session.commit()

        assert (await service.get_by_provider(AuthProvider.tuya, "uid-1")).id == test_user.id
        assert await service.get_by_provider(AuthProvider.tuya, "uid-2") is None
        assert await service.get_by_provider(AuthProvider.google, "uid-1") is None

    @pytest.mark.asyncio
    async def test_upsert_replaces_matching_provider_only(self, db_session, test_user: User):
        service = UserService(db_session)
        local_hash = test_user.get_auth(AuthProvider.local).access_token

        await service.upsert_auth(test_user, AuthProvider.tuya, "uid-1", access_token="first")
        await service.upsert_auth(test_user, AuthProvider.tuya, "uid-1", access_token="second")
        await db_session.commit()

        assert len(test_user.auth) == 2
        assert test_user.get_auth(AuthProvider.tuya).access_token == "second"
        assert test_user.get_auth(AuthProvider.local).access_token == local_hash

    @pytest.mark.asyncio
    async def test_update_auth_tokens_requires_link(self, db_session, test_user: User):
        service = UserService(db_session)
        with pytest.raises(ValidationError):
            await service.update_auth_tokens(test_user, AuthProvider.tuya, "a", "r", None)

    @pytest.mark.asyncio
    async def test_remove_auth(self, db_session, test_user: User):
        service = UserService(db_session)
        await service.upsert_auth(test_user, AuthProvider.tuya, "uid-1", access_token="a")
        await db_session.commit()

        assert await service.remove_auth(test_user, AuthProvider.tuya) is True
        await db_session.commit()
        assert await service.remove_auth(test_user, AuthProvider.tuya) is False
        assert await service.get_by_provider(AuthProvider.tuya, "uid-1") is None

    @pytest.mark.asyncio
    async def test_record_login(self, db_session, test_user: User):
        service = UserService(db_session)
        await service.record_login(test_user)
        await service.record_login(test_user)

        assert test_user.login_count == 2
        assert test_user.last_login_at is not None
