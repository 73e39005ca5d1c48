import threading
from datetime import datetime, timedelta


SELF_ECHO_TTL = timedelta(minutes=5)
RECEIPT_POLL_INTERVAL = timedelta(seconds=30)


class PendingEchoes:
    """Correlation ids of local sends that have not been seen coming back yet."""

    def __init__(self, ttl: timedelta = SELF_ECHO_TTL):
        self.ttl = ttl
        self._lock = threading.Lock()
        self._pending: dict[str, datetime] = {}

    def _prune(self, now: datetime) -> None:
        expired = [key for key, expires_at in self._pending.items() if expires_at <= now]
        for key in expired:
            del self._pending[key]

    def record(self, correlation_id: str, now: datetime) -> None:
        correlation_id = (correlation_id or "").strip()
        if not correlation_id:
            return
        with self._lock:
            self._prune(now)
            self._pending[correlation_id] = now + self.ttl

    def try_consume(self, correlation_id: str, now: datetime) -> bool:
        correlation_id = (correlation_id or "").strip()
        if not correlation_id:
            return False
        with self._lock:
            self._prune(now)
            return self._pending.pop(correlation_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class ReactionSeen:

    def __init__(self):
        self._lock = threading.Lock()
        self._seen: set[str] = set()

    def mark_seen(self, message_id: str) -> None:
        if not message_id:
            return
        with self._lock:
            self._seen.add(message_id)

    def take(self, message_id: str) -> bool:
        """Forget ``message_id`` and report whether it had reactions before."""
        with self._lock:
            if message_id in self._seen:
                self._seen.discard(message_id)
                return True
            return False


class UnreadCycle:

    def __init__(self):
        self._lock = threading.Lock()
        # thread id -> receipt already sent for the current unread state
        self._threads: dict[str, bool] = {}

    def mark_unread(self, thread_id: str) -> None:
        if not thread_id:
            return
        with self._lock:
            self._threads[thread_id] = False

    def should_send_receipt(self, thread_id: str) -> bool:
        with self._lock:
            if self._threads.get(thread_id, True):
                return False
            self._threads[thread_id] = True
            return True


class ReceiptPollGate:

    def __init__(self, interval: timedelta = RECEIPT_POLL_INTERVAL):
        self.interval = interval
        self._lock = threading.Lock()
        self._last: dict[str, datetime] = {}

    def should_poll_now(self, thread_id: str, now: datetime) -> bool:
        with self._lock:
            last = self._last.get(thread_id)
            if last is not None and now - last < self.interval:
                return False
            self._last[thread_id] = now
            return True
