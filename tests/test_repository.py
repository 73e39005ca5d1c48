"""Tests for the aiosqlite repository."""
import asyncio
from datetime import timedelta
from pathlib import Path

from teams_bridge.database.repository import Credentials, RemoteProfile, Repository, ScopedToken, ThreadRecord

from conftest import ACCOUNT, START


class TestRepository:

    def test_credentials_round_trip(self, db_path: Path):
        credentials = Credentials(
            refresh_token="refresh",
            access_token="access",
            access_token_expires_at=START,
            session_token="skype",
            session_token_expires_at=START + timedelta(hours=1),
            remote_user_id="8:live:alice",
            scoped_tokens={"https://graph.microsoft.com": ScopedToken("graph", START)},
        )

        async def scenario():
            async with Repository(db_path) as repo:
                await repo.save_credentials(ACCOUNT, credentials)
                loaded = await repo.get_credentials(ACCOUNT)
                accounts = await repo.list_accounts()
                await repo.delete_account(ACCOUNT)
                return loaded, accounts, await repo.get_credentials(ACCOUNT)

        loaded, accounts, deleted = asyncio.run(scenario())
        assert loaded == credentials
        assert accounts == [ACCOUNT]
        assert deleted is None

    def test_discovery_upsert_keeps_cursor(self, db_path: Path):
        async def scenario():
            async with Repository(db_path) as repo:
                await repo.upsert_thread(ThreadRecord(ACCOUNT, "t1", "c1", False, "Old"))
                await repo.update_cursor(ACCOUNT, "t1", "15", 1000)
                await repo.upsert_thread(ThreadRecord(ACCOUNT, "t1", "c1", True, "New"))
                return await repo.get_thread(ACCOUNT, "t1"), await repo.list_threads("someone-else")

        thread, others = asyncio.run(scenario())
        assert thread.name == "New"
        assert thread.is_one_to_one
        assert thread.last_sequence_id == "15"
        assert thread.last_message_ts == 1000
        assert others == []

    def test_read_cursor_never_moves_back(self, db_path: Path):
        async def scenario():
            async with Repository(db_path) as repo:
                assert await repo.get_read_cursor(ACCOUNT, "t1", "bob") is None
                await repo.upsert_read_cursor(ACCOUNT, "t1", "bob", 200)
                await repo.upsert_read_cursor(ACCOUNT, "t1", "bob", 100)
                return await repo.get_read_cursor(ACCOUNT, "t1", "bob")

        assert asyncio.run(scenario()) == 200

    def test_profile_upsert(self, db_path: Path):
        async def scenario():
            async with Repository(db_path) as repo:
                await repo.upsert_profile(RemoteProfile("8:live:bob", "Bob", 500))
                await repo.upsert_profile(RemoteProfile("8:live:bob", "Robert", 400))
                return await repo.get_profile("8:live:bob")

        profile = asyncio.run(scenario())
        assert profile.display_name == "Robert"
        assert profile.last_seen_ts == 500
