from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from teams_bridge.database.repository import Credentials, Repository, ThreadRecord
from teams_bridge.home import MemoryHome
from teams_bridge.session import Session
from teams_bridge.teams.auth import SessionGrant, TokenGrant
from teams_bridge.teams.models import (
    ConsumptionHorizon,
    MessageReaction,
    ReactionUser,
    RemoteConversation,
    RemoteMessage,
)


ACCOUNT = "alice"
SELF_ID = "8:live:alice"
START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTeamsClient:
    """In-memory stand-in for the chat API with the same call surface."""

    def __init__(self):
        self.conversations: list[RemoteConversation] = []
        self.messages: dict[str, list[RemoteMessage]] = {}
        self.horizons: dict[str, list[ConsumptionHorizon]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple] = []

    async def list_conversations(self, token: str) -> list[RemoteConversation]:
        self.calls.append(("list_conversations", token))
        if "conversations" in self.errors:
            raise self.errors["conversations"]
        return list(self.conversations)

    async def list_messages(self, conversation_id: str, cursor: str = "") -> list[RemoteMessage]:
        self.calls.append(("list_messages", conversation_id, cursor))
        if conversation_id in self.errors:
            raise self.errors[conversation_id]
        return list(self.messages.get(conversation_id, []))

    async def get_consumption_horizons(self, thread_id: str) -> list[ConsumptionHorizon]:
        self.calls.append(("get_consumption_horizons", thread_id))
        return list(self.horizons.get(thread_id, []))

    async def set_consumption_horizon(self, thread_id: str, horizon: str) -> None:
        self.calls.append(("set_consumption_horizon", thread_id, horizon))

    async def send_message_with_id(self, thread_id, body, sender_id, correlation_id) -> None:
        self.calls.append(("send_message_with_id", thread_id, body, sender_id, correlation_id))

    async def send_gif_with_id(self, thread_id, gif_url, title, sender_id, correlation_id) -> None:
        self.calls.append(("send_gif_with_id", thread_id, gif_url, title, sender_id, correlation_id))

    async def add_reaction(self, thread_id, message_id, emotion_key, applied_at_ms) -> None:
        self.calls.append(("add_reaction", thread_id, message_id, emotion_key, applied_at_ms))

    async def remove_reaction(self, thread_id, message_id, emotion_key) -> None:
        self.calls.append(("remove_reaction", thread_id, message_id, emotion_key))

    async def send_typing(self, thread_id, sender_id, correlation_id) -> None:
        self.calls.append(("send_typing", thread_id, sender_id, correlation_id))

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


def make_message(
    seq: int,
    sender: str = "8:live:bob",
    body: str = "hi",
    client_message_id: str = "",
    reactions: Optional[dict[str, list[str]]] = None,
    at: Optional[datetime] = None,
) -> RemoteMessage:
    return RemoteMessage(
        message_id=str(1000 + seq),
        sequence_id=str(seq),
        client_message_id=client_message_id,
        sender_id=sender,
        im_display_name="Bob" if sender == "8:live:bob" else "",
        timestamp=at or START + timedelta(seconds=seq),
        body=body,
        reactions=[
            MessageReaction(emotion_key=key, users=[ReactionUser(mri=user, time_ms=1714564800000) for user in users])
            for key, users in (reactions or {}).items()
        ],
    )


def make_auth(expires_in: float = 3600, clock: Optional[FakeClock] = None) -> MagicMock:
    clock = clock or FakeClock()
    auth = MagicMock()
    auth.refresh_access_token = AsyncMock(side_effect=lambda refresh, scope=None: TokenGrant(
        access_token=f"access-{scope or 'default'}",
        refresh_token="rotated-refresh",
        expires_at=clock() + timedelta(seconds=expires_in),
    ))
    auth.acquire_session_token = AsyncMock(side_effect=lambda access: SessionGrant(
        token="skype-token",
        expires_at=clock() + timedelta(seconds=expires_in),
        remote_id="live:alice",
    ))
    return auth


def valid_credentials(clock: FakeClock) -> Credentials:
    return Credentials(
        refresh_token="refresh",
        access_token_expires_at=clock() + timedelta(hours=1),
        session_token="skype-token",
        session_token_expires_at=clock() + timedelta(hours=1),
        remote_user_id=SELF_ID,
    )


async def seed_thread(repo: Repository, thread_id: str = "19:chat@thread.v2", **kwargs) -> ThreadRecord:
    record = ThreadRecord(account_id=ACCOUNT, thread_id=thread_id, conversation_id=thread_id, name="Chat", **kwargs)
    await repo.upsert_thread(record)
    return await repo.get_thread(ACCOUNT, thread_id)


def make_session(
    repo: Repository,
    client: FakeTeamsClient,
    clock: FakeClock,
    credentials: Optional[Credentials] = None,
    home: Optional[MemoryHome] = None,
    auth: Optional[MagicMock] = None,
) -> Session:
    home = home or MemoryHome()
    return Session(
        ACCOUNT,
        credentials or valid_credentials(clock),
        repo,
        home,
        home,
        auth or make_auth(clock=clock),
        MagicMock(),
        clock=clock,
        client_factory=lambda session: client,
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "bridge.db"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeTeamsClient:
    return FakeTeamsClient()
