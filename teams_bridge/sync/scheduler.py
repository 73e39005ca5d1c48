import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from dataclasses import dataclass, field

from .backoff import PollBackoff, apply_poll_outcome
from ..database.repository import Repository, ThreadRecord
from ..teams.models import compare_sequence_ids, utcnow


logger = logging.getLogger(__name__)


DISCOVERY_INTERVAL = timedelta(minutes=10)
WAKE_CEILING = timedelta(seconds=5)
MIN_SLEEP = timedelta(milliseconds=100)


@dataclass
class PollState:
    thread: ThreadRecord
    next_due: datetime
    backoff: PollBackoff = field(default_factory=PollBackoff)


class PollScheduler:
    """One cooperative loop that polls every known thread on its own backoff curve.

    Discovery failures are logged and retried on the next discovery tick. A
    failed ``poll`` feeds that thread's backoff and never reaches other threads.
    """

    def __init__(
        self,
        account_id: str,
        repo: Repository,
        discover: Callable[[], Awaitable[None]],
        poll: Callable[[ThreadRecord, datetime], Awaitable[int]],
        halted: Callable[[], bool] = lambda: False,
        discovery_interval: timedelta = DISCOVERY_INTERVAL,
        wake_ceiling: timedelta = WAKE_CEILING,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.account_id = account_id
        self.repo = repo
        self.discover = discover
        self.poll = poll
        self.halted = halted
        self.discovery_interval = discovery_interval
        self.wake_ceiling = wake_ceiling
        self.clock = clock
        self.states: dict[str, PollState] = {}
        self.next_discovery: Optional[datetime] = None

    def _merge(self, records: list[ThreadRecord], now: datetime) -> list[PollState]:
        due = []
        for record in records:
            state = self.states.get(record.thread_id)
            if state is None:
                state = PollState(thread=record, next_due=now)
                self.states[record.thread_id] = state
            else:
                # Keep an in-memory cursor that got ahead of a failed persist.
                kept = state.thread
                if kept.last_sequence_id and compare_sequence_ids(kept.last_sequence_id, record.last_sequence_id or "") > 0:
                    record.last_sequence_id = kept.last_sequence_id
                    record.last_message_ts = max(kept.last_message_ts, record.last_message_ts)
                state.thread = record
            due.append(state)
        return due

    async def tick(self) -> float:
        """Run one scheduling pass and return how many seconds to sleep."""
        now = self.clock()
        ceiling = self.wake_ceiling.total_seconds()

        if self.halted():
            return ceiling

        if self.next_discovery is None or now >= self.next_discovery:
            try:
                await self.discover()
                self.next_discovery = now + self.discovery_interval
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Discovery failed for %s: %s", self.account_id, e)
                # Until one discovery succeeds, retry on the next pass.
                if self.next_discovery is not None:
                    self.next_discovery = now + self.discovery_interval

        try:
            records = await self.repo.list_threads(self.account_id)
        except Exception as e:
            logger.error("Failed to list threads for %s: %s", self.account_id, e)
            return ceiling

        next_wake = now + self.wake_ceiling
        for state in self._merge(records, now):
            if self.halted():
                break
            if now < state.next_due:
                next_wake = min(next_wake, state.next_due)
                continue

            error = None
            ingested = 0
            try:
                ingested = await self.poll(state.thread, now)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
                logger.warning("Poll failed for %s: %s", state.thread.thread_id, e)

            delay, reason = apply_poll_outcome(state.backoff, ingested, error)
            state.next_due = now + timedelta(seconds=delay)
            next_wake = min(next_wake, state.next_due)
            logger.debug(
                "Polled %s: ingested=%d reason=%s next in %.1fs",
                state.thread.thread_id, ingested, reason.value, delay,
            )

        sleep = (next_wake - self.clock()).total_seconds()
        return max(sleep, MIN_SLEEP.total_seconds())

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("Poll loop started for %s", self.account_id)
        while not stop_event.is_set():
            sleep = await self.tick()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=sleep)
            except asyncio.TimeoutError:
                pass
        logger.info("Poll loop stopped for %s", self.account_id)

    async def poll_all_once(self) -> int:
        """Poll every known thread once, ignoring due times. Returns the total ingested."""
        now = self.clock()
        total = 0
        for state in self._merge(await self.repo.list_threads(self.account_id), now):
            try:
                ingested = await self.poll(state.thread, now)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Poll failed for %s: %s", state.thread.thread_id, e)
                apply_poll_outcome(state.backoff, 0, e)
                continue
            apply_poll_outcome(state.backoff, ingested)
            total += ingested
        return total
