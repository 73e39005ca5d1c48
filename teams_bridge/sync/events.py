from datetime import datetime
from enum import Enum
from typing import Optional, Protocol, Union
from dataclasses import dataclass, field

from ..teams.models import GIF


class RoomType(str, Enum):
    DM = "dm"
    GROUP = "default"


class SessionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BAD_CREDENTIALS = "bad_credentials"
    LOGGED_OUT = "logged_out"


@dataclass
class ChatResync:
    account_id: str
    thread_id: str
    name: str
    room_type: RoomType
    create_if_absent: bool = True


@dataclass
class MessageEvent:
    account_id: str
    thread_id: str
    message_id: str
    sender_id: str
    sender_name: str
    is_from_me: bool
    body: str
    timestamp: datetime
    stream_order: int
    formatted_body: str = ""
    gifs: list[GIF] = field(default_factory=list)
    correlation_id: str = ""


@dataclass
class BackfillReaction:
    sender_id: str
    is_from_me: bool
    emoji_id: str
    emoji: str
    timestamp: Optional[datetime] = None


@dataclass
class ReactionSyncUser:
    reactions: list[BackfillReaction] = field(default_factory=list)
    has_all_reactions: bool = True


@dataclass
class ReactionSync:
    account_id: str
    thread_id: str
    target_message_id: str
    users: dict[str, ReactionSyncUser] = field(default_factory=dict)
    has_all_users: bool = True


@dataclass
class ReadReceipt:
    account_id: str
    thread_id: str
    reader_id: str
    read_up_to: datetime
    target_message_id: Optional[str] = None


@dataclass
class SessionStateEvent:
    account_id: str
    state: SessionState
    message: str = ""


Event = Union[ChatResync, MessageEvent, ReactionSync, ReadReceipt, SessionStateEvent]


class EventSink(Protocol):

    def emit(self, event: Event) -> None:
        ...


class HomeLookup(Protocol):

    async def message_at_or_before(self, account_id: str, thread_id: str, ts: datetime) -> Optional[str]:
        ...

    async def reaction_count(self, account_id: str, thread_id: str, message_id: str) -> int:
        ...
