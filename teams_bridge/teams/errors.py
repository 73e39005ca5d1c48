from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx


class TeamsError(Exception):
    pass


class AuthRequiredError(TeamsError):
    """The refresh credential is missing or was rejected; the user must log in again."""


class UnsupportedReactionError(TeamsError):
    pass


class TeamsAPIError(TeamsError):

    def __init__(self, status: int, body: str = "", message: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message or f"teams api returned status {status}: {body[:200]}")

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500 and self.status != 429


class RetryableError(TeamsAPIError):

    def __init__(
        self,
        status: int,
        body: str = "",
        retry_after: Optional[float] = None,
        message: Optional[str] = None
    ):
        self.retry_after = retry_after
        super().__init__(status, body, message)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return seconds if seconds > 0 else None


def raise_for_response(response: httpx.Response) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    body = response.text
    if status == 429:
        raise RetryableError(status, body, retry_after=parse_retry_after(response.headers.get("Retry-After")))
    if status >= 500:
        raise RetryableError(status, body)
    raise TeamsAPIError(status, body)
