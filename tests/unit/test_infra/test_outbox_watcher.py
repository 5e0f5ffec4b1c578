"""Tests for the outbox watcher: backlog replay, live tailing and shutdown.

The watcher runs against InMemoryOutbox tables and a RecordingPublisher that
share a journal, so the relative order of publishes and deletes is visible.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from fixtures.outbox_fixtures import eventually
from outbox_relay.core.exceptions import (
    DeliveryError,
    OutboxReadError,
    StorageError,
    StreamClosedError,
)
from outbox_relay.infra.messaging.envelopes import DirectRelayEncoder, SequencedFrameEncoder
from outbox_relay.infra.messaging.frames import Frame, SequencedFrame
from outbox_relay.infra.outbox.models import IdentityKey, WatcherPhase
from outbox_relay.infra.outbox.testing import InMemoryOutbox, RecordingPublisher
from outbox_relay.infra.outbox.watcher import OutboxBinding, OutboxWatcher

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def direct_encoder() -> DirectRelayEncoder:
    return DirectRelayEncoder(prefix="chat")


def make_watcher(bindings, publisher, shutdown, name="messages") -> OutboxWatcher:
    return OutboxWatcher(name, bindings, publisher, shutdown)


async def start_tailing(watcher: OutboxWatcher) -> asyncio.Task[None]:
    """Run the watcher in the background until it is tailing live changes."""
    task = asyncio.create_task(watcher.run())
    await eventually(lambda: watcher.phase is WatcherPhase.TAILING_LIVE or task.done())
    return task


async def stop(task: asyncio.Task[None], shutdown) -> None:
    shutdown.request("test finished")
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.unit
class TestWatcherConstruction:
    def test_requires_at_least_one_binding(self, publisher, shutdown):
        with pytest.raises(ValueError, match="no outbox bindings"):
            OutboxWatcher("empty", [], publisher, shutdown)

    def test_kinds(self, direct_binding, broadcast_binding, publisher, shutdown):
        watcher = make_watcher([direct_binding, broadcast_binding], publisher, shutdown)
        assert watcher.kinds == ["messages", "group_operations"]
        assert watcher.phase is WatcherPhase.REPLAYING_BACKLOG


@pytest.mark.unit
class TestBacklogReplay:
    """Rows present at startup are delivered oldest first and then deleted."""

    @pytest.mark.asyncio
    async def test_backlog_row_is_published_then_deleted(
        self, messages_outbox, direct_binding, publisher, shutdown, journal
    ):
        messages_outbox.insert("chat-1", 5, b"hello", notify=False)
        watcher = make_watcher([direct_binding], publisher, shutdown)

        task = await start_tailing(watcher)
        await stop(task, shutdown)

        assert publisher.published == [("chat.chat-1", b"hello")]
        assert messages_outbox.rows == {}
        assert journal == [("publish", "chat.chat-1"), ("delete", "(chat-1, 5)")]
        assert watcher.stats.replayed == 1
        assert watcher.phase is WatcherPhase.STOPPED

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_row_and_stops_watcher(self, messages_outbox, shutdown, journal):
        messages_outbox.insert("chat-1", 5, b"hello", notify=False)
        publisher = RecordingPublisher.failing(journal=journal)
        watcher = make_watcher(
            [OutboxBinding("messages", messages_outbox, direct_encoder())], publisher, shutdown
        )

        with pytest.raises(DeliveryError) as exc_info:
            await watcher.run()

        assert exc_info.value.key == IdentityKey("chat-1", 5)
        assert exc_info.value.destination == "chat.chat-1"
        assert len(publisher.attempts) == 1
        assert messages_outbox.deleted == []
        assert IdentityKey("chat-1", 5) in messages_outbox.rows
        assert journal == []
        assert watcher.phase is WatcherPhase.STOPPED

    @pytest.mark.asyncio
    async def test_replay_order_follows_created_at(self, messages_outbox, direct_binding, publisher, shutdown):
        messages_outbox.insert("chat-1", 3, b"third", created_at=T0 + timedelta(seconds=3), notify=False)
        messages_outbox.insert("chat-1", 1, b"first", created_at=T0 + timedelta(seconds=1), notify=False)
        messages_outbox.insert("chat-2", 7, b"second", created_at=T0 + timedelta(seconds=2), notify=False)
        watcher = make_watcher([direct_binding], publisher, shutdown)

        await watcher.replay(direct_binding)

        assert [body for _, body in publisher.published] == [b"first", b"second", b"third"]

    @pytest.mark.asyncio
    async def test_created_at_ties_are_ordered_by_identity(
        self, messages_outbox, direct_binding, publisher, shutdown
    ):
        for seq in (2, 1, 3):
            messages_outbox.insert("chat-1", seq, str(seq).encode(), created_at=T0, notify=False)
        watcher = make_watcher([direct_binding], publisher, shutdown)

        await watcher.replay(direct_binding)

        assert [body for _, body in publisher.published] == [b"1", b"2", b"3"]

    @pytest.mark.asyncio
    async def test_replay_twice_delivers_nothing_new(self, messages_outbox, direct_binding, publisher, shutdown):
        messages_outbox.insert("chat-1", 1, b"a", notify=False)
        messages_outbox.insert("chat-1", 2, b"b", notify=False)
        watcher = make_watcher([direct_binding], publisher, shutdown)

        first = await watcher.replay(direct_binding)
        second = await watcher.replay(direct_binding)

        assert first == {IdentityKey("chat-1", 1), IdentityKey("chat-1", 2)}
        assert second == set()
        assert len(publisher.published) == 2

    @pytest.mark.asyncio
    async def test_empty_table_is_a_no_op(self, messages_outbox, direct_binding, publisher, shutdown, journal):
        watcher = make_watcher([direct_binding], publisher, shutdown)

        delivered = await watcher.replay(direct_binding)

        assert delivered == set()
        assert publisher.attempts == []
        assert journal == []

    @pytest.mark.asyncio
    async def test_undecodable_row_is_skipped(self, messages_outbox, direct_binding, publisher, shutdown):
        messages_outbox.insert_corrupt({"partition_key": "chat-1"})
        messages_outbox.insert("chat-1", 1, b"ok", notify=False)
        watcher = make_watcher([direct_binding], publisher, shutdown)

        await watcher.replay(direct_binding)

        assert publisher.published == [("chat.chat-1", b"ok")]
        assert watcher.stats.skipped == 1

    @pytest.mark.asyncio
    async def test_encode_failure_leaves_row_and_continues(self, messages_outbox, publisher, shutdown):
        good = Frame(kind=2, body=b"payload").encode()
        messages_outbox.insert("chat-1", 1, b"not a frame", notify=False)
        messages_outbox.insert("chat-1", 2, good, epoch=4, notify=False)
        binding = OutboxBinding("frames", messages_outbox, SequencedFrameEncoder(prefix="chat"))
        watcher = make_watcher([binding], publisher, shutdown)

        delivered = await watcher.replay(binding)

        assert delivered == {IdentityKey("chat-1", 2, 4)}
        assert IdentityKey("chat-1", 1) in messages_outbox.rows
        assert watcher.stats.skipped == 1
        destination, body = publisher.published[0]
        assert destination == "chat.chat-1"
        sequenced = SequencedFrame.decode(body)
        assert (sequenced.kind, sequenced.sequence_number, sequenced.epoch) == (2, 2, 4)
        assert sequenced.body == b"payload"

    @pytest.mark.asyncio
    async def test_delete_failure_is_fatal(self, messages_outbox, direct_binding, publisher, shutdown):
        messages_outbox.insert("chat-1", 1, b"a", notify=False)
        messages_outbox.fail_delete = True
        watcher = make_watcher([direct_binding], publisher, shutdown)

        with pytest.raises(StorageError):
            await watcher.run()

        assert len(publisher.published) == 1

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_replay(self, journal, publisher, shutdown):
        async def request_shutdown(outbox):
            shutdown.request("stop during replay")

        outbox = InMemoryOutbox(journal=journal, after_scan_row=request_shutdown)
        for seq in range(1, 4):
            outbox.insert("chat-1", seq, b"x", notify=False)
        watcher = make_watcher([OutboxBinding("messages", outbox, direct_encoder())], publisher, shutdown)

        await asyncio.wait_for(watcher.run(), timeout=2.0)

        assert len(publisher.published) == 1
        assert len(outbox.rows) == 2
        assert watcher.phase is WatcherPhase.STOPPED


@pytest.mark.unit
class TestLiveTailing:
    @pytest.mark.asyncio
    async def test_live_insert_is_fetched_and_delivered(self, messages_outbox, direct_binding, publisher, shutdown):
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)

        key = messages_outbox.insert("chat-9", 1, b"live")
        await eventually(lambda: watcher.stats.delivered_live == 1)
        await stop(task, shutdown)

        assert messages_outbox.fetched == [key]
        assert publisher.published == [("chat.chat-9", b"live")]
        assert messages_outbox.deleted == [key]

    @pytest.mark.asyncio
    async def test_full_document_notification_skips_fetch(self, journal, publisher, shutdown):
        outbox = InMemoryOutbox(journal=journal, full_document=True)
        watcher = make_watcher([OutboxBinding("messages", outbox, direct_encoder())], publisher, shutdown)
        task = await start_tailing(watcher)

        outbox.insert("chat-9", 1, b"inline")
        await eventually(lambda: watcher.stats.delivered_live == 1)
        await stop(task, shutdown)

        assert outbox.fetched == []
        assert publisher.published == [("chat.chat-9", b"inline")]

    @pytest.mark.asyncio
    async def test_non_insert_changes_are_ignored(self, messages_outbox, direct_binding, publisher, shutdown):
        key = messages_outbox.insert("chat-1", 1, b"a", notify=False)
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)
        publisher.published.clear()

        row = {"partition_key": "chat-1", "sequence_number": 2, "epoch": None}
        messages_outbox.notify_change("UPDATE", row)
        messages_outbox.notify_change("DELETE", row)
        messages_outbox.notify_change("TRUNCATE")
        await eventually(lambda: watcher.stats.ignored == 3)
        await stop(task, shutdown)

        assert publisher.published == []
        assert messages_outbox.fetched == []
        assert messages_outbox.deleted == [key]

    @pytest.mark.asyncio
    async def test_missing_row_is_skipped(self, messages_outbox, direct_binding, publisher, shutdown):
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)

        messages_outbox.notify_change("INSERT", {"partition_key": "chat-1", "sequence_number": 42, "epoch": None})
        await eventually(lambda: len(messages_outbox.fetched) == 1)
        await asyncio.sleep(0.01)

        assert not task.done()
        await stop(task, shutdown)
        assert publisher.attempts == []

    @pytest.mark.asyncio
    async def test_undecodable_notification_is_skipped(self, messages_outbox, direct_binding, publisher, shutdown):
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)

        messages_outbox.notify({"op": "INSERT"})
        messages_outbox.notify("not json at all")
        messages_outbox.insert("chat-1", 1, b"after")
        await eventually(lambda: watcher.stats.delivered_live == 1)
        await stop(task, shutdown)

        assert watcher.stats.skipped == 2
        assert publisher.published == [("chat.chat-1", b"after")]

    @pytest.mark.asyncio
    async def test_stream_read_error_does_not_stop_tailing(
        self, messages_outbox, direct_binding, publisher, shutdown
    ):
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)

        messages_outbox.notify(OutboxReadError("malformed notification"))
        messages_outbox.insert("chat-1", 1, b"after")
        await eventually(lambda: watcher.stats.delivered_live == 1)
        await stop(task, shutdown)

        assert publisher.published == [("chat.chat-1", b"after")]

    @pytest.mark.asyncio
    async def test_publish_failure_while_tailing_is_fatal(
        self, messages_outbox, direct_binding, publisher, shutdown
    ):
        publisher.fail_destinations = {"chat.chat-2"}
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)

        messages_outbox.insert("chat-2", 1, b"lost bus")
        with pytest.raises(DeliveryError):
            await asyncio.wait_for(task, timeout=2.0)

        assert IdentityKey("chat-2", 1) in messages_outbox.rows
        assert messages_outbox.deleted == []
        assert watcher.phase is WatcherPhase.STOPPED

    @pytest.mark.asyncio
    async def test_closed_stream_is_fatal(self, messages_outbox, direct_binding, publisher, shutdown):
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)

        messages_outbox.close_streams()
        with pytest.raises(StreamClosedError) as exc_info:
            await asyncio.wait_for(task, timeout=2.0)

        assert exc_info.value.kind == "messages"
        assert not messages_outbox.subscribed

    @pytest.mark.asyncio
    async def test_tails_every_binding(
        self, messages_outbox, group_outbox, direct_binding, broadcast_binding, publisher, shutdown
    ):
        messages_outbox.insert("chat-1", 1, b"backlog", notify=False)
        group_outbox.insert("group-1", 1, b"op-backlog", notify=False)
        watcher = make_watcher([direct_binding, broadcast_binding], publisher, shutdown)
        task = await start_tailing(watcher)

        messages_outbox.insert("chat-1", 2, b"live")
        group_outbox.insert("group-1", 2, b"op-live")
        await eventually(lambda: watcher.stats.delivered_live == 2)
        await stop(task, shutdown)

        destinations = sorted(destination for destination, _ in publisher.published)
        assert destinations == [
            "centrifugo.messages.group-1",
            "centrifugo.messages.group-1",
            "chat.chat-1",
            "chat.chat-1",
        ]
        assert watcher.stats.replayed == 2
        assert messages_outbox.rows == {}
        assert group_outbox.rows == {}


@pytest.mark.unit
class TestReplayTailRace:
    """Subscriptions open before the scan, so no row is lost or delivered twice."""

    @pytest.mark.asyncio
    async def test_row_inserted_during_replay_is_delivered_once(self, journal, publisher, shutdown):
        inserted = []

        async def insert_once(outbox):
            if not inserted:
                inserted.append(outbox.insert("chat-1", 99, b"racing"))

        outbox = InMemoryOutbox(journal=journal, after_scan_row=insert_once)
        outbox.insert("chat-1", 1, b"backlog", notify=False)
        watcher = make_watcher([OutboxBinding("messages", outbox, direct_encoder())], publisher, shutdown)

        task = await start_tailing(watcher)
        await eventually(lambda: watcher.stats.delivered_live == 1)
        await stop(task, shutdown)

        assert [body for _, body in publisher.published] == [b"backlog", b"racing"]
        assert outbox.rows == {}

    @pytest.mark.asyncio
    async def test_notification_for_replayed_row_is_dropped(self, journal, publisher, shutdown):
        second = IdentityKey("chat-1", 2)
        notified = []

        async def notify_second(outbox):
            if not notified:
                notified.append(True)
                outbox.notify_change("INSERT", outbox.rows[second])

        outbox = InMemoryOutbox(journal=journal, after_scan_row=notify_second)
        outbox.insert("chat-1", 1, b"one", notify=False)
        outbox.insert("chat-1", 2, b"two", notify=False)
        watcher = make_watcher([OutboxBinding("messages", outbox, direct_encoder())], publisher, shutdown)

        task = await start_tailing(watcher)
        await eventually(lambda: watcher.stats.duplicates == 1)
        await stop(task, shutdown)

        assert [body for _, body in publisher.published] == [b"one", b"two"]
        assert outbox.fetched == [second]
        assert watcher.stats.delivered_live == 0

    @pytest.mark.asyncio
    async def test_key_reused_while_notifications_are_buffered(self, journal, publisher, shutdown):
        reused = []

        async def reuse_key(outbox):
            if not reused:
                reused.append(outbox.insert("chat-1", 1, b"new"))

        outbox = InMemoryOutbox(journal=journal, after_scan_row=reuse_key)
        outbox.insert("chat-1", 1, b"old", notify=False)
        watcher = make_watcher([OutboxBinding("messages", outbox, direct_encoder())], publisher, shutdown)

        task = await start_tailing(watcher)
        await eventually(lambda: watcher.stats.delivered_live == 1)
        await stop(task, shutdown)

        assert [body for _, body in publisher.published] == [b"old", b"new"]
        assert outbox.fetched == reused
        assert outbox.rows == {}
        assert watcher.stats.duplicates == 0

    @pytest.mark.asyncio
    async def test_key_reused_after_replay_is_delivered(self, journal, publisher, shutdown):
        outbox = InMemoryOutbox(journal=journal)
        outbox.insert("chat-1", 1, b"old", notify=False)
        watcher = make_watcher([OutboxBinding("messages", outbox, direct_encoder())], publisher, shutdown)

        task = await start_tailing(watcher)
        await eventually(lambda: watcher.stats.replayed == 1)
        key = outbox.insert("chat-1", 1, b"new")
        await eventually(lambda: watcher.stats.delivered_live == 1)
        await stop(task, shutdown)

        assert [body for _, body in publisher.published] == [b"old", b"new"]
        assert outbox.fetched == [key]
        assert outbox.rows == {}
        assert watcher.stats.duplicates == 0


@pytest.mark.unit
class TestGracefulDrain:
    @pytest.mark.asyncio
    async def test_in_flight_publish_completes_before_stop(
        self, messages_outbox, direct_binding, publisher, shutdown
    ):
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)
        publisher.gate = asyncio.Event()

        key = messages_outbox.insert("chat-1", 1, b"in flight")
        await asyncio.wait_for(publisher.in_flight.wait(), timeout=2.0)
        shutdown.request("drain")
        await asyncio.sleep(0.01)
        assert not task.done()

        publisher.gate.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert publisher.published == [("chat.chat-1", b"in flight")]
        assert messages_outbox.deleted == [key]
        assert watcher.phase is WatcherPhase.STOPPED

    @pytest.mark.asyncio
    async def test_shutdown_while_idle_returns_normally(self, messages_outbox, direct_binding, publisher, shutdown):
        watcher = make_watcher([direct_binding], publisher, shutdown)
        task = await start_tailing(watcher)

        await stop(task, shutdown)

        assert task.exception() is None
        assert not messages_outbox.subscribed
        assert watcher.phase is WatcherPhase.STOPPED
