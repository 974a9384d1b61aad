from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field

from app.schemas.common import CamelModel
from app.schemas.user import UserResponse

# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password cannot exceed {MAX_PASSWORD_BYTES} bytes")
    return value


Password = Annotated[str, Field(min_length=8), AfterValidator(_check_password_bytes)]


class TokenPayload(BaseModel):
    """Claims carried by a bearer token (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: UUID = Field(alias="userId")
    session_id: str = Field(alias="sessionId")
    email: str
    role: str
    iat: int | None = None  # Issued at timestamp
    exp: int | None = None  # Expiration timestamp


@dataclass
class TokenValidationResult:
    valid: bool
    payload: TokenPayload | None = None
    expired: bool = False
    error: str | None = None


class AuthResult(CamelModel):
    user: UserResponse
    token: str
    refresh_token: str
    session_id: str
    expires_in: int  # seconds


class AuthSession(BaseModel):
    user_id: UUID
    session_id: str
    email: str
    display_name: str
    role: str
    is_authenticated: bool = True


class RegisterRequest(CamelModel):
    email: EmailStr
    password: Password
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(default="", max_length=50)
    timezone: str = Field(default="UTC", max_length=50)


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(CamelModel):
    email: EmailStr


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1)
    new_password: Password


class OAuthCallbackRequest(CamelModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    redirect_uri: str | None = None


class AuthStatusResponse(CamelModel):
    providers: list[str]
    oauth_configured: bool
