import html
import json
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Optional
from dataclasses import dataclass, field


DEFAULT_ROOM_NAME = "Chat"
GIPHY_ITEM_TYPE = "http://schema.skype.com/Giphy"

_TAG_RE = re.compile(r"(?i)<\s*/?\s*[a-z][^>]*>")
_BREAK_RE = re.compile(r"(?i)<\s*br\s*/?\s*>")
_BLOCK_END_RE = re.compile(r"(?i)<\s*/\s*(p|div|li|blockquote|pre|h[1-6]|ul|ol|section)\s*>")
_MANY_NEWLINES_RE = re.compile(r"\n{3,}")
_IMG_RE = re.compile(r"(?i)<\s*img\b[^>]*>")
_ATTR_RE = re.compile(r'(?i)([a-z_:-]+)\s*=\s*"([^"]*)"')


@dataclass
class ReactionUser:
    mri: str
    time_ms: int = 0


@dataclass
class MessageReaction:
    emotion_key: str
    users: list[ReactionUser] = field(default_factory=list)


@dataclass
class GIF:
    url: str
    title: str = ""


@dataclass
class RemoteMessage:
    message_id: str
    sequence_id: str = ""
    client_message_id: str = ""
    sender_id: str = ""
    sender_name: str = ""
    im_display_name: str = ""
    token_display_name: str = ""
    timestamp: Optional[datetime] = None
    body: str = ""
    formatted_body: str = ""
    gifs: list[GIF] = field(default_factory=list)
    reactions: list[MessageReaction] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict) -> "RemoteMessage":
        raw = data.get("content")
        if isinstance(raw, dict):
            raw = raw.get("text") or ""
        body, formatted = normalize_message_body(raw or "")
        return cls(
            message_id=str(data.get("id") or ""),
            sequence_id=_sequence_to_str(data.get("sequenceId")),
            client_message_id=str(data.get("clientmessageid") or ""),
            sender_id=extract_sender_id(data.get("from")),
            sender_name=extract_sender_name(data.get("from")),
            im_display_name=(data.get("imdisplayname") or "").strip(),
            token_display_name=(data.get("fromDisplayNameInToken") or "").strip(),
            timestamp=parse_timestamp(data.get("originalarrivaltime") or ""),
            body=body,
            formatted_body=formatted,
            gifs=parse_gifs(raw or ""),
            reactions=extract_reactions(data.get("properties")),
        )

    @property
    def timestamp_ms(self) -> int:
        if self.timestamp is None:
            return 0
        return int(self.timestamp.timestamp() * 1000)


@dataclass
class ConversationMember:
    id: str = ""
    name: str = ""
    is_self: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "ConversationMember":
        return cls(
            id=(data.get("id") or "").strip() or (data.get("mri") or "").strip(),
            name=(data.get("displayName") or "").strip() or (data.get("name") or "").strip(),
            is_self=bool(data.get("isSelf") or data.get("isCurrentUser")),
        )


@dataclass
class Thread:
    thread_id: str
    conversation_id: str
    thread_type: str = ""
    is_one_to_one: bool = False
    name: str = DEFAULT_ROOM_NAME


_NAME_FIELDS = ("topic", "threadTopic", "title", "displayName", "name")


@dataclass
class RemoteConversation:
    id: str
    thread_properties: dict = field(default_factory=dict)
    properties: dict = field(default_factory=dict)
    root_names: dict = field(default_factory=dict)
    members: list[ConversationMember] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict) -> "RemoteConversation":
        members = []
        for key in ("members", "participants", "consumers"):
            for item in data.get(key) or []:
                if isinstance(item, dict):
                    members.append(ConversationMember.from_api(item))
        return cls(
            id=(data.get("id") or "").strip(),
            thread_properties=data.get("threadProperties") or {},
            properties=data.get("properties") or {},
            root_names={name: data.get(name) for name in ("topic", "title", "displayName", "name")},
            members=members,
        )

    def normalize_for_self(self, self_user_id: str = "") -> Optional[Thread]:
        thread_id = str(self.thread_properties.get("originalThreadId") or "").strip()
        if not thread_id:
            return None
        thread_type = str(self.thread_properties.get("productThreadType") or "").strip()
        self_id = self_user_id.strip()
        is_one_to_one = thread_type == "OneToOneChat" or self._is_likely_one_to_one(self_id)
        if is_one_to_one:
            name = self._dm_name(self_id)
        else:
            name = self.topic()
        return Thread(
            thread_id=thread_id,
            conversation_id=self.id,
            thread_type=thread_type,
            is_one_to_one=is_one_to_one,
            name=name or DEFAULT_ROOM_NAME,
        )

    def topic(self) -> str:
        candidates = []
        for source in (self.thread_properties, self.properties):
            candidates.extend(source.get(name) for name in _NAME_FIELDS)
        candidates.extend(self.root_names.get(name) for name in ("topic", "title", "displayName", "name"))
        for candidate in candidates:
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        return ""

    def _is_self(self, member: ConversationMember, self_id: str) -> bool:
        if member.is_self:
            return True
        if self_id and member.id and member.id.lower() == self_id.lower():
            return True
        self_norm = normalize_participant_id(self_id)
        return bool(self_norm) and normalize_participant_id(member.id) == self_norm

    def _self_names(self, self_id: str) -> set[str]:
        return {m.name.lower() for m in self.members if m.name and self._is_self(m, self_id)}

    def _others(self, self_id: str) -> list[ConversationMember]:
        self_names = self._self_names(self_id)
        return [
            m for m in self.members
            if not self._is_self(m, self_id)
            and not is_bot_id(m.id)
            and not (m.name and m.name.lower() in self_names)
        ]

    def _dm_name(self, self_id: str) -> str:
        for member in self._others(self_id):
            if member.name:
                return member.name
        return ""

    def _is_likely_one_to_one(self, self_id: str) -> bool:
        if self.topic():
            return False
        keys = set()
        for member in self._others(self_id):
            key = normalize_participant_id(member.id) or member.name.lower()
            if key:
                keys.add(key)
        return len(keys) == 1


@dataclass
class ConsumptionHorizon:
    user_id: str
    horizon: str


def _sequence_to_str(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def extract_sender_id(raw: Any) -> str:
    if isinstance(raw, str):
        raw = raw.strip()
        idx = raw.rfind("/")
        if 0 <= idx < len(raw) - 1:
            return raw[idx + 1:]
        return raw
    if isinstance(raw, dict):
        return (raw.get("id") or "").strip()
    return ""


def extract_sender_name(raw: Any) -> str:
    if isinstance(raw, dict):
        return (raw.get("displayName") or raw.get("name") or "").strip()
    return ""


def _parse_reaction_time(raw: Any) -> int:
    if isinstance(raw, bool) or raw is None:
        return 0
    if isinstance(raw, (int, float)):
        return int(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            return int(float(raw.strip()))
        except ValueError:
            return 0
    return 0


def extract_reactions(properties: Any) -> list[MessageReaction]:
    if not isinstance(properties, dict):
        return []
    emotions = properties.get("emotions")
    if isinstance(emotions, str):
        try:
            emotions = json.loads(emotions)
        except ValueError:
            return []
    if not isinstance(emotions, list):
        return []

    reactions = []
    for emotion in emotions:
        if not isinstance(emotion, dict):
            continue
        key = (emotion.get("key") or "").strip()
        if not key:
            continue
        users = []
        for user in emotion.get("users") or []:
            mri = (user.get("mri") or "").strip() if isinstance(user, dict) else ""
            if mri:
                users.append(ReactionUser(mri=mri, time_ms=_parse_reaction_time(user.get("time"))))
        if users:
            reactions.append(MessageReaction(emotion_key=key, users=users))
    return reactions


def looks_like_html(value: str) -> bool:
    return bool(_TAG_RE.search(value))


def _normalize_plain(value: str) -> str:
    value = value.replace("\r\n", "\n").replace("\u00a0", " ")
    lines = [line.rstrip() for line in value.split("\n")]
    return _MANY_NEWLINES_RE.sub("\n\n", "\n".join(lines)).strip()


def normalize_message_body(raw: str) -> tuple[str, str]:
    """Returns (plain body, formatted body); the formatted body is empty for plain text."""
    if not looks_like_html(raw):
        return _normalize_plain(html.unescape(raw)), ""
    text = _BREAK_RE.sub("\n", raw)
    text = _BLOCK_END_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    body = _normalize_plain(html.unescape(text))
    if not body:
        return "", ""
    return body, raw.strip()


def parse_gifs(raw: str) -> list[GIF]:
    gifs = []
    seen = set()
    for tag in _IMG_RE.findall(raw):
        attrs = {name.lower(): html.unescape(value) for name, value in _ATTR_RE.findall(tag)}
        if attrs.get("itemtype", "").strip() != GIPHY_ITEM_TYPE:
            continue
        url = attrs.get("src", "").strip()
        if not url or url in seen:
            continue
        seen.add(url)
        gifs.append(GIF(url=url, title=attrs.get("alt", "").strip()))
    return gifs


def _is_uint(value: str) -> bool:
    return value.isascii() and value.isdigit()


def compare_sequence_ids(a: str, b: str) -> int:
    if _is_uint(a) and _is_uint(b):
        left, right = int(a), int(b)
    else:
        left, right = a, b
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def sequence_sort_key(message: RemoteMessage):
    if _is_uint(message.sequence_id):
        return (0, int(message.sequence_id), "")
    return (1, 0, message.sequence_id)


def normalize_message_id(value: str) -> str:
    value = (value or "").strip()
    if value.startswith("msg/"):
        value = value[len("msg/"):]
    return value


def normalize_user_id(value: str) -> str:
    value = (value or "").strip()
    if not value:
        return ""
    if value.startswith("8:"):
        return value
    return "8:" + value


def normalize_participant_id(raw: str) -> str:
    value = (raw or "").strip().lower()
    while True:
        prefix, sep, rest = value.partition(":")
        if not sep or not prefix or not rest or not prefix.isdigit():
            return value
        value = rest


def is_bot_id(raw: str) -> bool:
    value = (raw or "").strip().lower()
    return bool(value) and (value.startswith("28:") or "teamsbot" in value)


def parse_horizon_read_ts(blob: str) -> Optional[int]:
    parts = (blob or "").split(";")
    if len(parts) < 2:
        return None
    try:
        value = int(parts[1].strip())
    except ValueError:
        return None
    return value if value > 0 else None


def horizon_now(now: datetime) -> str:
    ms = to_ms(now)
    return f"{ms};{ms};0"


_id_lock = threading.Lock()
_last_id = 0


def generate_correlation_id() -> str:
    global _last_id
    with _id_lock:
        value = time.time_ns()
        if value <= _last_id:
            value = _last_id + 1
        _last_id = value
    return str(value)
