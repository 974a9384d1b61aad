import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from app.exceptions import ExternalApiError
from app.schemas.oauth import ProviderProfile, ProviderTokenResponse

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/v1.0/oauth/token"
USERINFO_PATH = "/v1.0/oauth/userinfo"
REVOKE_PATH = "/v1.0/oauth/revoke"
SIGN_METHOD = "HMAC-SHA256"


def sha256_hex(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def canonical_string(method: str, body: str, path: str) -> str:
    return "\n".join([method.upper(), sha256_hex(body), "", path])


def compute_signature(
    client_id: str,
    client_secret: str,
    timestamp: str,
    nonce: str,
    method: str,
    path: str,
    body: str = "",
    access_token: Optional[str] = None,
) -> str:
    """Tuya request signature.

    sign = HEX_UPPER(HMAC_SHA256(client_id [+ access_token] + t + nonce +
    "METHOD\\nSHA256(body)\\n\\npath", client_secret))
    """
    sign_str = client_id + (access_token or "") + timestamp + nonce + canonical_string(method, body, path)
    digest = hmac.new(client_secret.encode("utf-8"), sign_str.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest().upper()


class TuyaOAuthClient:
    """Talks to the Tuya Cloud OAuth endpoints.

    Every request is signed with a fresh timestamp and nonce and bounded by
    the client timeout.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        redirect_uri: str,
        scope: str = "device:read device:write user.profile",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.redirect_uri = redirect_uri
        self.scope = scope
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_authorization_url(
        self,
        state: str,
        redirect_uri: Optional[str] = None,
        scope: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> str:
        params = {
            "response_type": "code",
            "client_id": client_id or self.client_id,
            "redirect_uri": redirect_uri or self.redirect_uri,
            "state": state,
            "scope": scope or self.scope,
        }
        return f"{self.base_url}{AUTHORIZE_PATH}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> ProviderTokenResponse:
        body = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or self.redirect_uri,
        }
        result = await self._request("POST", TOKEN_PATH, "Token exchange", json_body=body)
        return ProviderTokenResponse.model_validate(result)

    async def refresh_token(self, refresh_token: str) -> ProviderTokenResponse:
        body = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        result = await self._request("POST", TOKEN_PATH, "Token refresh", json_body=body)
        return ProviderTokenResponse.model_validate(result)

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        result = await self._request("GET", USERINFO_PATH, "User info", access_token=access_token)
        return ProviderProfile.model_validate(result)

    async def revoke(self, access_token: str) -> None:
        await self._request("POST", REVOKE_PATH, "Token revoke", access_token=access_token)

    def signed_headers(
        self, method: str, path: str, body: str = "", access_token: Optional[str] = None
    ) -> dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        nonce = secrets.token_hex(16)
        headers = {
            "client_id": self.client_id,
            "t": timestamp,
            "sign_method": SIGN_METHOD,
            "nonce": nonce,
            "sign": compute_signature(
                self.client_id,
                self.client_secret,
                timestamp,
                nonce,
                method,
                path,
                body,
                access_token,
            ),
        }
        if access_token:
            headers["access_token"] = access_token
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        json_body: Optional[dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        # The signed hash must cover exactly the bytes on the wire.
        body = json.dumps(json_body, separators=(",", ":")) if json_body is not None else ""
        headers = self.signed_headers(method, path, body, access_token)

        try:
            response = await self._client.request(method, path, content=body or None, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"{action} timed out: {e}")
            raise ExternalApiError(f"{action} failed: provider timed out", 504) from e
        except httpx.HTTPError as e:
            logger.warning(f"{action} request error: {e}")
            raise ExternalApiError(f"{action} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            message = data.get("msg") if isinstance(data, dict) else None
            logger.error(f"{action} failed with HTTP {response.status_code}: {message}")
            raise ExternalApiError(
                f"{action} failed: {message or response.reason_phrase}",
                response.status_code,
            )

        if not isinstance(data, dict) or not data.get("success"):
            message = data.get("msg", "unknown error") if isinstance(data, dict) else "unknown error"
            logger.error(f"{action} rejected by provider: {message}")
            raise ExternalApiError(f"{action} failed: {message}", 400)

        return data.get("result")
