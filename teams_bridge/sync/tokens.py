import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..database.repository import Credentials, Repository, ScopedToken
from ..teams.auth import AuthClient, TokenGrant
from ..teams.errors import AuthRequiredError, TeamsAPIError
from ..teams.models import normalize_user_id, utcnow


logger = logging.getLogger(__name__)


TOKEN_SKEW = timedelta(seconds=60)
GRAPH_AUDIENCE = "https://graph.microsoft.com"


def scope_for(audience: str) -> str:
    return f"{audience.rstrip('/')}/.default openid profile offline_access"


class TokenManager:
    """Keeps the refresh -> access -> session chain of one account usable.

    Every refresh is written back to the repository right away so that a
    restart picks up where the process left off. Concurrent callers share
    one lock and reuse whatever refresh finished while they waited.
    """

    def __init__(
        self,
        account_id: str,
        credentials: Credentials,
        auth: AuthClient,
        repo: Repository,
        skew: timedelta = TOKEN_SKEW,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.account_id = account_id
        self.credentials = credentials
        self.auth = auth
        self.repo = repo
        self.skew = skew
        self.clock = clock
        self._lock = asyncio.Lock()

    @property
    def self_id(self) -> str:
        return self.credentials.remote_user_id

    @property
    def session_token(self) -> str:
        return self.credentials.session_token

    def _usable(self, token: str, expires_at: Optional[datetime]) -> bool:
        if not token or expires_at is None:
            return False
        return self.clock() + self.skew < expires_at

    def has_valid_session_token(self) -> bool:
        creds = self.credentials
        return self._usable(creds.session_token, creds.session_token_expires_at)

    def invalidate_session_token(self) -> None:
        self.credentials.session_token = ""
        self.credentials.session_token_expires_at = None

    def _require_refresh_token(self) -> str:
        refresh_token = self.credentials.refresh_token.strip()
        if not refresh_token:
            raise AuthRequiredError("missing refresh token, re-login required")
        return refresh_token

    async def _apply_rotation(self, grant: TokenGrant) -> None:
        rotated = grant.refresh_token.strip()
        if rotated and rotated != self.credentials.refresh_token:
            self.credentials.refresh_token = rotated
            # The previous refresh token may already be revoked.
            await self._persist()

    async def _refresh_access_token(self, refresh_token: str) -> str:
        grant = await self.auth.refresh_access_token(refresh_token)
        creds = self.credentials
        creds.access_token = grant.access_token
        creds.access_token_expires_at = grant.expires_at
        await self._apply_rotation(grant)
        return grant.access_token

    async def _persist(self) -> None:
        try:
            await self.repo.save_credentials(self.account_id, self.credentials)
        except Exception as e:
            logger.error("Failed to persist credentials for %s: %s", self.account_id, e)

    async def ensure_session_token(self) -> str:
        if self.has_valid_session_token():
            return self.credentials.session_token

        async with self._lock:
            if self.has_valid_session_token():
                return self.credentials.session_token

            refresh_token = self._require_refresh_token()
            logger.info("Refreshing session token for %s", self.account_id)

            creds = self.credentials
            session = None
            if self._usable(creds.access_token, creds.access_token_expires_at):
                try:
                    session = await self.auth.acquire_session_token(creds.access_token)
                except AuthRequiredError as e:
                    logger.info("Stored access token rejected for %s (%s), refreshing", self.account_id, e)
                    creds.access_token = ""
                    creds.access_token_expires_at = None
            if session is None:
                session = await self.auth.acquire_session_token(await self._refresh_access_token(refresh_token))

            creds.session_token = session.token
            creds.session_token_expires_at = session.expires_at
            if session.remote_id:
                creds.remote_user_id = normalize_user_id(session.remote_id)

            await self._persist()
            return creds.session_token

    async def ensure_scoped_token(self, audience: str = GRAPH_AUDIENCE) -> str:
        current = self.credentials.scoped_tokens.get(audience)
        if current and self._usable(current.token, current.expires_at):
            return current.token

        async with self._lock:
            current = self.credentials.scoped_tokens.get(audience)
            if current and self._usable(current.token, current.expires_at):
                return current.token

            refresh_token = self._require_refresh_token()
            logger.info("Refreshing %s token for %s", audience, self.account_id)

            try:
                grant = await self.auth.refresh_access_token(refresh_token, scope=scope_for(audience))
            except (AuthRequiredError, TeamsAPIError) as e:
                if isinstance(e, TeamsAPIError) and not e.is_client_error:
                    raise
                logger.info("Scoped refresh for %s rejected (%s), retrying with default scopes", audience, e)
                grant = await self.auth.refresh_access_token(refresh_token)

            await self._apply_rotation(grant)
            if grant.expires_at is None:
                raise TeamsAPIError(200, message=f"{audience} token refresh returned no expiry")

            self.credentials.scoped_tokens[audience] = ScopedToken(
                token=grant.access_token,
                expires_at=grant.expires_at,
            )
            await self._persist()
            return grant.access_token
