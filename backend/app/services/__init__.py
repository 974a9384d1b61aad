"""Service layer for authentication and sessions."""

from app.services.auth_service import AuthService
from app.services.cache import CacheManager
from app.services.oauth_service import OAuthService
from app.services.oauth_state import OAuthStateStore
from app.services.session_store import SessionStore, WriteResult
from app.services.tuya_oauth import TuyaOAuthClient
from app.services.user_service import UserService

__all__ = [
    "AuthService",
    "CacheManager",
    "OAuthService",
    "OAuthStateStore",
    "SessionStore",
    "TuyaOAuthClient",
    "UserService",
    "WriteResult",
]
