import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import ValidationError as PydanticValidationError

from app.schemas.auth import TokenPayload, TokenValidationResult

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class TokenService:
    """Signs and verifies bearer tokens.

    Tokens carry ``userId``, ``sessionId``, ``email`` and ``role`` plus fixed
    issuer/audience claims, so tokens minted for another audience are
    rejected even when they share the secret.
    """

    def __init__(self, secret_key: str, expires_in: int, issuer: str, audience: str):
        self.secret_key = secret_key
        self.expires_in = expires_in
        self.issuer = issuer
        self.audience = audience

    def sign(self, payload: TokenPayload, expires_delta: timedelta | None = None) -> str:
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta if expires_delta is not None else timedelta(seconds=self.expires_in))
        to_encode = {
            "userId": str(payload.user_id),
            "sessionId": payload.session_id,
            "email": payload.email,
            "role": payload.role,
            "iat": now,
            "exp": expire,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=ALGORITHM)

    def validate(self, token: str) -> TokenValidationResult:
        """Never raises: expired tokens are reported apart from invalid ones."""
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": True},
            )
        except ExpiredSignatureError:
            return TokenValidationResult(valid=False, expired=True, error="Token expired")
        except JWTError:
            return TokenValidationResult(valid=False, error="Invalid token")

        try:
            payload = TokenPayload.model_validate(claims)
        except PydanticValidationError:
            logger.warning("Token passed signature checks but has malformed claims")
            return TokenValidationResult(valid=False, error="Invalid token payload")
        return TokenValidationResult(valid=True, payload=payload)

    @staticmethod
    def generate_opaque_secret(byte_length: int = 32) -> str:
        return secrets.token_hex(byte_length)
