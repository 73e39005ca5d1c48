from enum import Enum
from typing import Optional
from dataclasses import dataclass

from ..teams.errors import RetryableError, TeamsAPIError


BASE_DELAY = 2.0
IDLE_CAP = 30.0
FAILURE_CAP = 60.0


class BackoffReason(str, Enum):
    SUCCESS = "success"
    IDLE = "idle"
    RETRY_AFTER = "retry_after"
    FAILURE = "failure"
    CLIENT_4XX = "client_4xx"


@dataclass
class PollBackoff:
    failures: int = 0
    delay: float = 0.0

    def _ensure_base(self) -> None:
        if self.delay <= 0:
            self.delay = BASE_DELAY

    def on_success(self) -> float:
        self.failures = 0
        self.delay = BASE_DELAY
        return self.delay

    def on_idle(self) -> float:
        self._ensure_base()
        self.failures = 0
        self.delay = min(self.delay + BASE_DELAY, IDLE_CAP)
        return self.delay

    def on_retry_after(self, wait: float) -> float:
        if wait <= 0:
            return self.on_failure()
        self.failures += 1
        self.delay = wait
        return self.delay

    def on_failure(self) -> float:
        self.failures += 1
        self.delay = min(BASE_DELAY * 2 ** (self.failures - 1), FAILURE_CAP)
        return self.delay

    def on_client_error(self) -> float:
        self.failures = 0
        self.delay = IDLE_CAP
        return self.delay


def apply_poll_outcome(
    backoff: PollBackoff,
    ingested: int,
    error: Optional[BaseException] = None
) -> tuple[float, BackoffReason]:
    """Feed one poll outcome into ``backoff`` and return the next delay with its reason."""
    if error is None:
        if ingested > 0:
            return backoff.on_success(), BackoffReason.SUCCESS
        return backoff.on_idle(), BackoffReason.IDLE

    if isinstance(error, RetryableError):
        if error.retry_after and error.retry_after > 0:
            return backoff.on_retry_after(error.retry_after), BackoffReason.RETRY_AFTER
        return backoff.on_failure(), BackoffReason.FAILURE

    if isinstance(error, TeamsAPIError) and error.is_client_error:
        return backoff.on_client_error(), BackoffReason.CLIENT_4XX

    return backoff.on_failure(), BackoffReason.FAILURE
