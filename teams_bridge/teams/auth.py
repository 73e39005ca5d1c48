import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from dataclasses import dataclass

import httpx

from .errors import AuthRequiredError, RetryableError, TeamsAPIError, parse_retry_after


logger = logging.getLogger(__name__)


TOKEN_ENDPOINT = "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
SESSION_TOKEN_ENDPOINT = "https://teams.live.com/api/auth/v1.0/authz/consumer"
ORIGIN = "https://teams.live.com"
DEFAULT_SCOPES = [
    "openid",
    "profile",
    "offline_access",
    "https://graph.microsoft.com/Files.ReadWrite",
]


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime]


@dataclass
class SessionGrant:
    token: str
    expires_at: Optional[datetime]
    remote_id: str


class AuthClient:

    def __init__(
        self,
        http: httpx.AsyncClient,
        client_id: str,
        token_endpoint: str = TOKEN_ENDPOINT,
        session_token_endpoint: str = SESSION_TOKEN_ENDPOINT,
    ):
        self._http = http
        self.client_id = client_id
        self.token_endpoint = token_endpoint
        self.session_token_endpoint = session_token_endpoint

    async def _post(self, what: str, url: str, **kwargs) -> dict:
        try:
            response = await self._http.post(url, **kwargs)
        except httpx.TransportError as e:
            raise RetryableError(0, message=f"{what} request failed: {e}") from e

        status = response.status_code
        if status < 200 or status >= 300:
            snippet = response.text.strip()[:400]
            logger.error("%s failed with status %s: %s", what, status, snippet)
            if status in (400, 401, 403):
                raise AuthRequiredError(f"{what} rejected with status {status}")
            if status == 429:
                raise RetryableError(status, snippet, retry_after=parse_retry_after(response.headers.get("Retry-After")))
            if status >= 500:
                raise RetryableError(status, snippet)
            raise TeamsAPIError(status, snippet)

        try:
            data = response.json()
        except ValueError as e:
            raise TeamsAPIError(status, response.text, f"{what} returned invalid json") from e
        return data if isinstance(data, dict) else {}

    async def refresh_access_token(self, refresh_token: str, scope: Optional[str] = None) -> TokenGrant:
        if not refresh_token:
            raise AuthRequiredError("missing refresh token, re-login required")

        form = {
            "client_id": self.client_id,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": scope or " ".join(DEFAULT_SCOPES),
        }
        data = await self._post(
            "token refresh",
            self.token_endpoint,
            data=form,
            headers={"Origin": ORIGIN},
        )

        access_token = data.get("access_token") or ""
        if not access_token:
            raise TeamsAPIError(200, message="token response missing access_token")

        expires_at = None
        expires_in = data.get("expires_in")
        if expires_in:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))

        return TokenGrant(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or "",
            expires_at=expires_at,
        )

    async def acquire_session_token(self, access_token: str) -> SessionGrant:
        if not access_token:
            raise ValueError("missing access token for session token acquisition")

        logger.info("Acquiring Teams session token")
        data = await self._post(
            "session token exchange",
            self.session_token_endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
        )

        payload = data.get("skypeToken") or {}
        token = payload.get("skypetoken") or ""
        if not token:
            raise TeamsAPIError(200, message="session token response missing skypetoken")

        expires_at = None
        if payload.get("expiresIn"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(payload["expiresIn"]))

        return SessionGrant(
            token=token,
            expires_at=expires_at,
            remote_id=(payload.get("skypeid") or "").strip(),
        )
