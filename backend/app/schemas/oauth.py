from pydantic import BaseModel, ConfigDict

from app.schemas.common import CamelModel


class ProviderTokenResponse(BaseModel):
    """``result`` of a successful Tuya token grant."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"
    uid: str | None = None


class ProviderProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uid: str
    username: str | None = None
    email: str | None = None
    nick_name: str | None = None
    avatar_url: str | None = None
    mobile: str | None = None
    country_code: str | None = None
    temp_unit: int | None = None
    time_zone_id: str | None = None


class OAuthState(BaseModel):
    state: str
    redirect_uri: str
    nonce: str
    timestamp: int  # milliseconds since epoch


class OAuthLoginResponse(CamelModel):
    auth_url: str
    state: str
