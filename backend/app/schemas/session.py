from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.utils.timezone import ensure_utc


class DeviceInfo(BaseModel):
    user_agent: str | None = None
    ip_address: str | None = None
    platform: str = "unknown"
    browser: str | None = None


class SessionData(BaseModel):
    """A session as held in either store; the cache keeps it as JSON."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    session_token: str
    user_id: UUID
    refresh_token: str
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    expires_at: datetime
    created_at: datetime
    last_accessed_at: datetime

    @field_validator("expires_at", "created_at", "last_accessed_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("device_info", mode="before")
    @classmethod
    def _device_info(cls, value: object) -> object:
        return value or {}
