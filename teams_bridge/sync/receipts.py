import logging
from datetime import datetime
from typing import Optional, Protocol

from .events import EventSink, HomeLookup, ReadReceipt
from .trackers import ReceiptPollGate, UnreadCycle
from ..database.repository import Repository
from ..teams.models import ConsumptionHorizon, from_ms, horizon_now, parse_horizon_read_ts


logger = logging.getLogger(__name__)


class HorizonSource(Protocol):

    async def get_consumption_horizons(self, thread_id: str) -> list[ConsumptionHorizon]:
        ...

    async def set_consumption_horizon(self, thread_id: str, horizon: str) -> None:
        ...


class ReceiptReconciler:

    def __init__(
        self,
        account_id: str,
        repo: Repository,
        sink: EventSink,
        home: HomeLookup,
        gate: ReceiptPollGate,
        unread: UnreadCycle,
    ):
        self.account_id = account_id
        self.repo = repo
        self.sink = sink
        self.home = home
        self.gate = gate
        self.unread = unread
        # (thread id, reader id) -> highest read timestamp already emitted
        self._read_ts: dict[tuple[str, str], int] = {}

    async def poll_thread(
        self,
        client: HorizonSource,
        thread_id: str,
        self_id: str,
        now: datetime
    ) -> Optional[ReadReceipt]:
        if not self.gate.should_poll_now(thread_id, now):
            return None

        horizons = await client.get_consumption_horizons(thread_id)
        others = [h for h in horizons if h.user_id and h.user_id != self_id]
        if len(others) != 1:
            # Several readers make the receipt target ambiguous.
            return None
        reader = others[0]

        read_ts = parse_horizon_read_ts(reader.horizon)
        if read_ts is None:
            return None

        key = (thread_id, reader.user_id)
        last_read = self._read_ts.get(key)
        stored = await self.repo.get_read_cursor(self.account_id, thread_id, reader.user_id)
        if stored is not None:
            last_read = stored if last_read is None else max(last_read, stored)
        if last_read is not None and read_ts <= last_read:
            return None

        read_up_to = from_ms(read_ts)
        target = None
        try:
            target = await self.home.message_at_or_before(self.account_id, thread_id, read_up_to)
        except Exception as e:
            logger.warning("Receipt target lookup failed in %s: %s", thread_id, e)

        receipt = ReadReceipt(
            account_id=self.account_id,
            thread_id=thread_id,
            reader_id=reader.user_id,
            read_up_to=read_up_to,
            target_message_id=target,
        )
        self.sink.emit(receipt)
        self._read_ts[key] = read_ts

        try:
            await self.repo.upsert_read_cursor(self.account_id, thread_id, reader.user_id, read_ts)
        except Exception as e:
            logger.error("Failed to persist read cursor for %s in %s: %s", reader.user_id, thread_id, e)
        return receipt

    async def send_receipt(self, client: HorizonSource, thread_id: str, now: datetime) -> bool:
        """Forward a home-side read receipt, at most once per unread cycle."""
        if not self.unread.should_send_receipt(thread_id):
            return False
        try:
            await client.set_consumption_horizon(thread_id, horizon_now(now))
        except Exception:
            self.unread.mark_unread(thread_id)
            raise
        logger.debug("Sent read receipt for %s", thread_id)
        return True
