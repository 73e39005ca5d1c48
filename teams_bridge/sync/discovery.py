import logging
from typing import Protocol

from .events import ChatResync, EventSink, RoomType
from .tokens import TokenManager
from ..database.repository import Repository, ThreadRecord
from ..teams.models import RemoteConversation


logger = logging.getLogger(__name__)


class ConversationSource(Protocol):

    async def list_conversations(self, token: str) -> list[RemoteConversation]:
        ...


class ThreadDiscovery:

    def __init__(self, account_id: str, tokens: TokenManager, repo: Repository, sink: EventSink):
        self.account_id = account_id
        self.tokens = tokens
        self.repo = repo
        self.sink = sink

    async def run(self, client: ConversationSource) -> int:
        """List remote conversations, upsert thread records and emit a resync per thread."""
        token = await self.tokens.ensure_session_token()
        conversations = await client.list_conversations(token)

        discovered = 0
        for conversation in conversations:
            thread = conversation.normalize_for_self(self.tokens.self_id)
            if thread is None:
                continue

            record = ThreadRecord(
                account_id=self.account_id,
                thread_id=thread.thread_id,
                conversation_id=thread.conversation_id or thread.thread_id,
                is_one_to_one=thread.is_one_to_one,
                name=thread.name,
            )
            try:
                await self.repo.upsert_thread(record)
            except Exception as e:
                logger.error("Failed to store thread %s: %s", thread.thread_id, e)
                continue

            self.sink.emit(ChatResync(
                account_id=self.account_id,
                thread_id=thread.thread_id,
                name=thread.name,
                room_type=RoomType.DM if thread.is_one_to_one else RoomType.GROUP,
            ))
            discovered += 1

        logger.info("Discovered %d threads for %s", discovered, self.account_id)
        return discovered
