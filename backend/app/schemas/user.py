from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import ConfigDict, Field

from app.schemas.common import CamelModel


class UserResponse(CamelModel):
    """User as returned to clients; provider credentials are never included."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    email_verified: bool = False
    display_name: str
    role: str
    profile: dict[str, Any] = Field(default_factory=dict)
    is_active: bool
    is_suspended: bool
    login_count: int = 0
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AuthProviderStatus(CamelModel):
    provider: str
    connected: bool
    last_login_at: datetime | None = None


class MeResponse(CamelModel):
    user: UserResponse
    provider_connected: bool
    auth_providers: list[AuthProviderStatus]
