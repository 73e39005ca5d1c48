import logging
from typing import Optional

from .events import BackfillReaction, EventSink, HomeLookup, ReactionSync, ReactionSyncUser
from .trackers import ReactionSeen
from ..teams.models import RemoteMessage, from_ms, normalize_message_id


logger = logging.getLogger(__name__)


# Emotion key -> emoji. When several keys share an emoji the first one wins
# for the outbound direction.
EMOTION_EMOJI = {
    "like": "👍",
    "heart": "❤️",
    "laugh": "😄",
    "surprised": "😮",
    "sad": "☹️",
    "angry": "😠",
    "ok": "👌",
    "fire": "🔥",
    "heartblue": "💙",
    "smile": "🙂",
    "kiss": "😘",
    "tongueout": "😛",
    "wink": "😉",
    "cry": "😢",
    "inlove": "😍",
    "hug": "🤗",
    "cwl": "😂",
    "lips": "💋",
    "blush": "😊",
    "penguin": "🐧",
    "cool": "😎",
    "rofl": "🤣",
    "cat": "🐱",
    "monkey": "🐵",
    "hi": "👋",
    "snowangel": "❄️",
    "flower": "🌸",
    "giggle": "😁",
    "devil": "😈",
    "party": "🥳",
    "worry": "😟",
    "champagne": "🍾",
    "sun": "☀️",
    "star": "⭐",
    "polarbear": "🐻‍❄️",
    "eyeroll": "🙄",
    "speechless": "😶",
    "wonder": "🤔",
    "think": "🤔",
    "puke": "🤮",
    "facepalm": "🤦",
    "sweat": "😓",
    "sleepy": "😴",
    "bow": "🙇",
    "makeup": "💄",
    "cash": "💵",
    "lipssealed": "🤐",
    "shivering": "🥶",
    "cake": "🎂",
    "headbang": "🤕",
    "dance": "💃",
    "wasntme": "😳",
    "hungover": "🤢",
    "yawn": "🥱",
    "gift": "🎁",
    "angel": "😇",
    "xmastree": "🎄",
    "brokenheart": "💔",
    "clap": "👏",
    "punch": "👊",
    "envy": "😒",
    "handshake": "🤝",
    "nerdy": "🤓",
    "emo": "🖤",
    "muscle": "💪",
    "mmm": "😋",
    "highfive": "🙌",
    "turkey": "🦃",
    "call": "📞",
    "dog": "🐶",
    "coffee": "☕",
    "poke": "👉",
    "swear": "🤬",
    "donttalktome": "😑",
    "fingerscrossed": "🤞",
    "rainbow": "🌈",
    "headphones": "🎧",
    "waiting": "⏳",
    "festiveparty": "🎉",
    "ninja": "🥷",
    "beer": "🍺",
    "bomb": "💣",
    "happy": "😀",
}

# Skin-tone variants sent by some clients.
_EMOJI_ALIASES = {
    "👍🏻": "like",
    "👌🏻": "ok",
}

VARIATION_SELECTOR = "\ufe0f"


def _emoji_key(emoji: str) -> str:
    return emoji.strip().replace(VARIATION_SELECTOR, "")


def _build_reverse() -> dict[str, str]:
    reverse = {}
    for key, emoji in EMOTION_EMOJI.items():
        reverse.setdefault(_emoji_key(emoji), key)
    for emoji, key in _EMOJI_ALIASES.items():
        reverse.setdefault(_emoji_key(emoji), key)
    return reverse


_EMOJI_EMOTION = _build_reverse()


def emoji_for_emotion(emotion_key: str) -> Optional[str]:
    return EMOTION_EMOJI.get((emotion_key or "").strip().lower())


def emotion_for_emoji(emoji: str) -> Optional[str]:
    return _EMOJI_EMOTION.get(_emoji_key(emoji or ""))


def message_key(message: RemoteMessage) -> str:
    return normalize_message_id(message.message_id) or normalize_message_id(message.sequence_id)


class ReactionReconciler:

    def __init__(
        self,
        account_id: str,
        sink: EventSink,
        home: HomeLookup,
        seen: ReactionSeen,
    ):
        self.account_id = account_id
        self.sink = sink
        self.home = home
        self.seen = seen

    def build_snapshot(self, message: RemoteMessage, self_id: str) -> dict[str, ReactionSyncUser]:
        users: dict[str, ReactionSyncUser] = {}
        for reaction in message.reactions:
            emoji = emoji_for_emotion(reaction.emotion_key)
            if emoji is None:
                logger.debug("Dropping unmapped emotion key %r", reaction.emotion_key)
                continue
            for user in reaction.users:
                if not user.mri:
                    continue
                entry = users.setdefault(user.mri, ReactionSyncUser())
                entry.reactions.append(BackfillReaction(
                    sender_id=user.mri,
                    is_from_me=bool(self_id) and user.mri == self_id,
                    emoji_id=reaction.emotion_key,
                    emoji=emoji,
                    timestamp=from_ms(user.time_ms) if user.time_ms > 0 else None,
                ))
        return users

    async def reconcile(
        self,
        thread_id: str,
        message: RemoteMessage,
        self_id: str,
        message_id: str = ""
    ) -> Optional[ReactionSync]:
        message_id = message_id or message_key(message)
        if not message_id:
            return None

        users = self.build_snapshot(message, self_id)
        if users:
            self.seen.mark_seen(message_id)
        else:
            had_reactions = self.seen.take(message_id)
            if not had_reactions:
                try:
                    had_reactions = await self.home.reaction_count(self.account_id, thread_id, message_id) > 0
                except Exception as e:
                    logger.warning("Reaction count lookup failed for %s: %s", message_id, e)
                    return None
            if not had_reactions:
                return None

        event = ReactionSync(
            account_id=self.account_id,
            thread_id=thread_id,
            target_message_id=message_id,
            users=users,
        )
        self.sink.emit(event)
        return event
