"""Tests for the in-memory sync trackers."""
from datetime import timedelta

from teams_bridge.sync.trackers import PendingEchoes, ReactionSeen, ReceiptPollGate, UnreadCycle

from conftest import START


class TestPendingEchoes:

    def test_consumed_once(self):
        echoes = PendingEchoes()
        echoes.record("42", START)
        assert echoes.try_consume("42", START + timedelta(seconds=1))
        assert not echoes.try_consume("42", START + timedelta(seconds=2))

    def test_expires_after_ttl(self):
        echoes = PendingEchoes(ttl=timedelta(minutes=5))
        echoes.record("42", START)
        assert not echoes.try_consume("42", START + timedelta(minutes=5))
        assert len(echoes) == 0

    def test_blank_ids_ignored(self):
        echoes = PendingEchoes()
        echoes.record("  ", START)
        assert len(echoes) == 0
        assert not echoes.try_consume("", START)


class TestReactionSeen:

    def test_take_forgets(self):
        seen = ReactionSeen()
        seen.mark_seen("m1")
        assert seen.take("m1")
        assert not seen.take("m1")
        assert not seen.take("m2")


class TestUnreadCycle:

    def test_one_receipt_per_cycle(self):
        unread = UnreadCycle()
        assert not unread.should_send_receipt("t")
        unread.mark_unread("t")
        assert unread.should_send_receipt("t")
        assert not unread.should_send_receipt("t")
        unread.mark_unread("t")
        assert unread.should_send_receipt("t")


class TestReceiptPollGate:

    def test_cooldown_per_thread(self):
        gate = ReceiptPollGate(interval=timedelta(seconds=30))
        assert gate.should_poll_now("a", START)
        assert gate.should_poll_now("b", START)
        assert not gate.should_poll_now("a", START + timedelta(seconds=29))
        assert gate.should_poll_now("a", START + timedelta(seconds=30))
