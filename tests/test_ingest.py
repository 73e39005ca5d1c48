"""Tests for per-thread message ingestion."""
import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from teams_bridge.database.repository import Repository
from teams_bridge.home import MemoryHome
from teams_bridge.sync.events import MessageEvent, ReactionSync
from teams_bridge.sync.ingest import MessageIngestor
from teams_bridge.sync.reactions import ReactionReconciler
from teams_bridge.sync.trackers import PendingEchoes, ReactionSeen, UnreadCycle

from conftest import ACCOUNT, SELF_ID, START, FakeTeamsClient, make_message, seed_thread


THREAD = "19:chat@thread.v2"


def make_ingestor(repo, home: MemoryHome, echoes=None, unread=None) -> MessageIngestor:
    reactions = ReactionReconciler(ACCOUNT, home, home, ReactionSeen())
    return MessageIngestor(ACCOUNT, repo, home, reactions, echoes or PendingEchoes(), unread or UnreadCycle())


class TestMessageIngestor:

    def test_new_messages_advance_cursor(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        fake_client.messages[THREAD] = [make_message(1), make_message(2), make_message(3)]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                ingested = await make_ingestor(repo, home).poll_thread(fake_client, thread, SELF_ID, START)
                return ingested, thread, await repo.get_thread(ACCOUNT, THREAD), await repo.get_profile("8:live:bob")

        ingested, thread, stored, profile = asyncio.run(scenario())
        assert ingested == 3
        assert thread.last_sequence_id == "3"
        assert stored.last_sequence_id == "3"
        assert stored.last_message_ts == thread.last_message_ts
        assert [e.message_id for e in home.of_type(MessageEvent)] == ["1001", "1002", "1003"]
        assert home.of_type(MessageEvent)[0].sender_name == "Bob"
        assert profile.display_name == "Bob"

    def test_redelivery_is_not_reemitted(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        fake_client.messages[THREAD] = [make_message(1), make_message(2)]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                ingestor = make_ingestor(repo, home)
                first = await ingestor.poll_thread(fake_client, thread, SELF_ID, START)
                second = await ingestor.poll_thread(fake_client, thread, SELF_ID, START)
                return first, second, thread

        first, second, thread = asyncio.run(scenario())
        assert (first, second) == (2, 0)
        assert len(home.of_type(MessageEvent)) == 2
        assert thread.last_sequence_id == "2"
        assert fake_client.calls[-1] == ("list_messages", THREAD, "2")

    def test_cursor_never_moves_back(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        fake_client.messages[THREAD] = [make_message(4), make_message(10)]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                await repo.update_cursor(ACCOUNT, THREAD, "9", 0)
                thread = await repo.get_thread(ACCOUNT, THREAD)
                await make_ingestor(repo, home).poll_thread(fake_client, thread, SELF_ID, START)
                return await repo.get_thread(ACCOUNT, THREAD)

        stored = asyncio.run(scenario())
        assert stored.last_sequence_id == "10"
        assert [e.message_id for e in home.of_type(MessageEvent)] == ["1010"]

    def test_self_echo_suppressed_but_cursor_advances(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        echoes = PendingEchoes()
        echoes.record("corr-1", START)
        unread = UnreadCycle()
        fake_client.messages[THREAD] = [
            make_message(1, sender=SELF_ID, client_message_id="corr-1", reactions={"like": ["8:live:bob"]}),
        ]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                ingested = await make_ingestor(repo, home, echoes, unread).poll_thread(
                    fake_client, thread, SELF_ID, START,
                )
                return ingested, thread

        ingested, thread = asyncio.run(scenario())
        assert ingested == 1
        assert thread.last_sequence_id == "1"
        assert home.of_type(MessageEvent) == []
        assert home.of_type(ReactionSync)[0].target_message_id == "corr-1"
        assert len(echoes) == 0
        assert not unread.should_send_receipt(THREAD)

    def test_own_message_from_elsewhere_is_emitted(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        fake_client.messages[THREAD] = [make_message(1, sender=SELF_ID, client_message_id="other-device")]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                await make_ingestor(repo, home).poll_thread(fake_client, thread, SELF_ID, START)

        asyncio.run(scenario())
        event = home.of_type(MessageEvent)[0]
        assert event.is_from_me
        assert event.message_id == "other-device"

    def test_later_reactions_on_own_message_use_its_home_id(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        fake_client.messages[THREAD] = [make_message(1, sender=SELF_ID, client_message_id="other-device")]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                ingestor = make_ingestor(repo, home)
                await ingestor.poll_thread(fake_client, thread, SELF_ID, START)
                fake_client.messages[THREAD] = [
                    make_message(1, sender=SELF_ID, client_message_id="other-device", reactions={"like": ["8:live:bob"]}),
                ]
                await ingestor.poll_thread(fake_client, thread, SELF_ID, START)
                fake_client.messages[THREAD] = [make_message(1, sender=SELF_ID, client_message_id="other-device")]
                await ingestor.poll_thread(fake_client, thread, SELF_ID, START)

        asyncio.run(scenario())
        assert [e.message_id for e in home.of_type(MessageEvent)] == ["other-device"]
        syncs = home.of_type(ReactionSync)
        assert [s.target_message_id for s in syncs] == ["other-device", "other-device"]
        assert syncs[1].users == {}

    def test_incoming_message_marks_unread(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        unread = UnreadCycle()
        fake_client.messages[THREAD] = [make_message(1)]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                await make_ingestor(repo, home, unread=unread).poll_thread(fake_client, thread, SELF_ID, START)

        asyncio.run(scenario())
        assert unread.should_send_receipt(THREAD)

    def test_sender_name_falls_back_to_id(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        fake_client.messages[THREAD] = [make_message(1, sender="8:live:carol")]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                await make_ingestor(repo, home).poll_thread(fake_client, thread, SELF_ID, START)

        asyncio.run(scenario())
        assert home.of_type(MessageEvent)[0].sender_name == "8:live:carol"

    def test_reactions_reconciled_on_already_seen_messages(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        fake_client.messages[THREAD] = [make_message(1)]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                ingestor = make_ingestor(repo, home)
                await ingestor.poll_thread(fake_client, thread, SELF_ID, START)
                fake_client.messages[THREAD] = [make_message(1, reactions={"laugh": ["8:live:bob"]})]
                await ingestor.poll_thread(fake_client, thread, SELF_ID, START)

        asyncio.run(scenario())
        assert len(home.of_type(MessageEvent)) == 1
        assert home.of_type(ReactionSync)[0].target_message_id == "1001"

    def test_persist_failure_keeps_memory_cursor(self, db_path: Path, fake_client: FakeTeamsClient):
        home = MemoryHome()
        fake_client.messages[THREAD] = [make_message(1), make_message(2)]

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                repo.update_cursor = AsyncMock(side_effect=RuntimeError("locked"))
                ingested = await make_ingestor(repo, home).poll_thread(fake_client, thread, SELF_ID, START)
                return ingested, thread

        ingested, thread = asyncio.run(scenario())
        assert ingested == 2
        assert thread.last_sequence_id == "2"

    def test_fetch_error_propagates(self, db_path: Path, fake_client: FakeTeamsClient):
        fake_client.errors[THREAD] = RuntimeError("boom")

        async def scenario():
            async with Repository(db_path) as repo:
                thread = await seed_thread(repo)
                await make_ingestor(repo, MemoryHome()).poll_thread(fake_client, thread, SELF_ID, START)

        with pytest.raises(RuntimeError, match="boom"):
            asyncio.run(scenario())
