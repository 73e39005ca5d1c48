import logging
from datetime import datetime
from typing import Protocol

from .events import EventSink, MessageEvent
from .reactions import ReactionReconciler, message_key
from .trackers import PendingEchoes, UnreadCycle
from ..database.repository import RemoteProfile, Repository, ThreadRecord
from ..teams.models import RemoteMessage, compare_sequence_ids, to_ms


logger = logging.getLogger(__name__)


class MessageSource(Protocol):

    async def list_messages(self, conversation_id: str, cursor: str = "") -> list[RemoteMessage]:
        ...


def resolve_sender_name(message: RemoteMessage) -> str:
    return message.im_display_name or message.token_display_name or message.sender_name or message.sender_id


class MessageIngestor:

    def __init__(
        self,
        account_id: str,
        repo: Repository,
        sink: EventSink,
        reactions: ReactionReconciler,
        echoes: PendingEchoes,
        unread: UnreadCycle,
    ):
        self.account_id = account_id
        self.repo = repo
        self.sink = sink
        self.reactions = reactions
        self.echoes = echoes
        self.unread = unread

    async def _remember_profile(self, message: RemoteMessage, name: str, now: datetime) -> None:
        if not message.sender_id or not name:
            return
        seen_at = message.timestamp or now
        try:
            await self.repo.upsert_profile(RemoteProfile(
                remote_user_id=message.sender_id,
                display_name=name,
                last_seen_ts=to_ms(seen_at),
            ))
        except Exception as e:
            logger.error("Failed to store profile for %s: %s", message.sender_id, e)

    async def poll_thread(
        self,
        client: MessageSource,
        thread: ThreadRecord,
        self_id: str,
        now: datetime
    ) -> int:
        """Ingest everything newer than the thread cursor and return how many messages moved it.

        Fetch errors propagate to the caller. ``thread`` is updated in place
        when the cursor advances, even if persisting it fails.
        """
        conversation_id = thread.conversation_id or thread.thread_id
        messages = await client.list_messages(conversation_id, thread.last_sequence_id)

        last_seq = thread.last_sequence_id
        max_seq = last_seq
        max_ts = thread.last_message_ts
        ingested = 0

        for message in messages:
            if not message.message_id.strip():
                continue

            is_from_me = bool(self_id) and message.sender_id == self_id
            message_id = message_key(message)
            if is_from_me and message.client_message_id:
                message_id = message.client_message_id

            if last_seq and compare_sequence_ids(message.sequence_id, last_seq) <= 0:
                await self.reactions.reconcile(thread.thread_id, message, self_id, message_id)
                continue

            sender_name = resolve_sender_name(message)
            await self._remember_profile(message, sender_name, now)

            await self.reactions.reconcile(thread.thread_id, message, self_id, message_id)

            is_echo = self.echoes.try_consume(message.client_message_id, now)

            if not max_seq or compare_sequence_ids(message.sequence_id, max_seq) > 0:
                max_seq = message.sequence_id
            timestamp = message.timestamp or now
            max_ts = max(max_ts, to_ms(timestamp))
            ingested += 1

            if is_echo:
                logger.debug("Suppressing echo of local send %s in %s", message.client_message_id, thread.thread_id)
                continue

            self.sink.emit(MessageEvent(
                account_id=self.account_id,
                thread_id=thread.thread_id,
                message_id=message_id,
                sender_id=message.sender_id,
                sender_name=sender_name,
                is_from_me=is_from_me,
                body=message.body,
                formatted_body=message.formatted_body,
                gifs=list(message.gifs),
                timestamp=timestamp,
                stream_order=to_ms(timestamp),
                correlation_id=message.client_message_id,
            ))

            if not is_from_me:
                self.unread.mark_unread(thread.thread_id)

        if max_seq and max_seq != last_seq:
            thread.last_sequence_id = max_seq
            thread.last_message_ts = max_ts
            try:
                await self.repo.update_cursor(self.account_id, thread.thread_id, max_seq, max_ts)
            except Exception as e:
                logger.error("Failed to persist cursor for %s: %s", thread.thread_id, e)

        return ingested
