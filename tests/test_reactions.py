"""Tests for reaction snapshot reconciliation and emoji mapping."""
import asyncio

from teams_bridge.home import MemoryHome
from teams_bridge.sync.events import ReactionSync
from teams_bridge.sync.reactions import EMOTION_EMOJI, ReactionReconciler, emoji_for_emotion, emotion_for_emoji
from teams_bridge.sync.trackers import ReactionSeen

from conftest import ACCOUNT, SELF_ID, make_message


THREAD = "19:chat@thread.v2"


def make_reconciler(home: MemoryHome) -> ReactionReconciler:
    return ReactionReconciler(ACCOUNT, home, home, ReactionSeen())


class TestEmojiMapping:

    def test_forward_and_reverse(self):
        assert emoji_for_emotion("like") == "👍"
        assert emoji_for_emotion(" HEART ") == EMOTION_EMOJI["heart"]
        assert emotion_for_emoji("👍") == "like"
        assert emotion_for_emoji("\u2764") == "heart"
        assert emotion_for_emoji("\U0001F44D\U0001F3FB") == "like"

    def test_shared_emoji_maps_to_first_key(self):
        assert emotion_for_emoji("🤔") == "wonder"

    def test_unknown(self):
        assert emoji_for_emotion("nosuchthing") is None
        assert emotion_for_emoji("🦄") is None


class TestReactionReconciler:

    def test_two_users_in_one_snapshot(self):
        home = MemoryHome()
        message = make_message(1, reactions={"like": ["8:live:bob", SELF_ID]})

        asyncio.run(make_reconciler(home).reconcile(THREAD, message, SELF_ID))

        syncs = home.of_type(ReactionSync)
        assert len(syncs) == 1
        assert syncs[0].target_message_id == "1001"
        assert set(syncs[0].users) == {"8:live:bob", SELF_ID}
        mine = syncs[0].users[SELF_ID].reactions[0]
        assert mine.is_from_me
        assert mine.emoji == "👍"

    def test_removal_emits_single_empty_sync(self):
        home = MemoryHome()
        reconciler = make_reconciler(home)

        async def scenario():
            await reconciler.reconcile(THREAD, make_message(1, reactions={"like": ["8:live:bob"]}), SELF_ID)
            for _ in range(3):
                await reconciler.reconcile(THREAD, make_message(1), SELF_ID)

        asyncio.run(scenario())
        syncs = home.of_type(ReactionSync)
        assert len(syncs) == 2
        assert syncs[1].users == {}

    def test_removal_known_only_to_home(self):
        home = MemoryHome()
        home.emit(ReactionSync(ACCOUNT, THREAD, "1001", make_reconciler(home).build_snapshot(
            make_message(1, reactions={"heart": ["8:live:bob"]}), SELF_ID,
        )))
        reconciler = make_reconciler(home)

        result = asyncio.run(reconciler.reconcile(THREAD, make_message(1), SELF_ID))

        assert result is not None
        assert result.users == {}

    def test_no_reactions_anywhere_emits_nothing(self):
        home = MemoryHome()
        assert asyncio.run(make_reconciler(home).reconcile(THREAD, make_message(1), SELF_ID)) is None
        assert not home.events

    def test_unmapped_keys_dropped(self):
        home = MemoryHome()
        message = make_message(1, reactions={"mystery": ["8:live:bob"], "fire": ["8:live:carol"]})

        asyncio.run(make_reconciler(home).reconcile(THREAD, message, SELF_ID))

        users = home.of_type(ReactionSync)[0].users
        assert list(users) == ["8:live:carol"]
