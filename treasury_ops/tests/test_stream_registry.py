"""Tests for live notification streams."""

import asyncio
import json

import pytest

from treasury_ops.notifications.models import Notification, NotificationType
from treasury_ops.notifications.stream import (
    CONNECTED_MESSAGE,
    ChannelClosed,
    QueueChannel,
    StreamRegistry,
    sse_events,
)

from .conftest import RecordingChannel

USER = "rm-alice"


def _notification(clock, notification_type=NotificationType.SYSTEM_ALERT, title="Hello"):
    return Notification(
        notification_id=f"n-{title}",
        user_id=USER,
        type=notification_type,
        title=title,
        message="body",
        created_at=clock(),
    )


class TestSubscribe:
    """Connection registration and eviction."""

    @pytest.mark.asyncio
    async def test_first_frame_is_connected(self, registry):
        channel = RecordingChannel()

        await registry.subscribe(USER, channel)

        assert json.loads(channel.frames[0]) == {"type": "connected", "message": CONNECTED_MESSAGE}
        assert registry.is_subscribed(USER)
        await registry.close()

    @pytest.mark.asyncio
    async def test_new_subscription_evicts_previous(self, registry, clock):
        old, new = RecordingChannel(), RecordingChannel()
        await registry.subscribe(USER, old)

        await registry.subscribe(USER, new)
        delivered = await registry.publish(USER, _notification(clock))

        assert delivered is True
        assert old.closed is True
        assert len(old.frames) == 1
        assert len(new.frames) == 2
        assert registry.connection_count == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_stale_unsubscribe_keeps_replacement(self, registry):
        old, new = RecordingChannel(), RecordingChannel()
        await registry.subscribe(USER, old)
        await registry.subscribe(USER, new)

        removed = await registry.unsubscribe(USER, old)

        assert removed is False
        assert registry.is_subscribed(USER)
        assert await registry.unsubscribe(USER, new) is True
        assert not registry.is_subscribed(USER)


class TestPublish:
    """Filtering and failure handling."""

    @pytest.mark.asyncio
    async def test_publish_without_subscriber(self, registry, clock):
        assert await registry.publish(USER, _notification(clock)) is False

    @pytest.mark.asyncio
    async def test_type_filter(self, registry, clock):
        channel = RecordingChannel()
        await registry.subscribe(USER, channel, [NotificationType.PROCESSING_FAILED])

        skipped = await registry.publish(USER, _notification(clock, NotificationType.SYSTEM_ALERT))
        sent = await registry.publish(
            USER, _notification(clock, NotificationType.PROCESSING_FAILED, "Failed")
        )

        assert skipped is False
        assert sent is True
        assert [json.loads(f).get("title") for f in channel.frames[1:]] == ["Failed"]
        await registry.close()

    @pytest.mark.asyncio
    async def test_write_failure_unsubscribes(self, registry, clock):
        channel = RecordingChannel(fail_after=1)
        await registry.subscribe(USER, channel)

        delivered = await registry.publish(USER, _notification(clock))

        assert delivered is False
        assert not registry.is_subscribed(USER)
        assert channel.closed is True

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, registry, clock):
        alice, bob = RecordingChannel(), RecordingChannel()
        await registry.subscribe(USER, alice)
        await registry.subscribe("rm-bob", bob)

        await registry.publish(USER, _notification(clock))

        assert len(alice.frames) == 2
        assert len(bob.frames) == 1
        await registry.close()
        assert registry.connection_count == 0


class TestHeartbeat:
    """Periodic keep-alive frames."""

    @pytest.mark.asyncio
    async def test_heartbeat_frames_are_written(self, clock):
        registry = StreamRegistry(heartbeat_interval=0.01, clock=clock)
        channel = RecordingChannel()
        await registry.subscribe(USER, channel)

        await asyncio.sleep(0.05)
        await registry.close()

        heartbeats = [json.loads(f) for f in channel.frames[1:]]
        assert heartbeats
        assert all(f == {"type": "heartbeat", "timestamp": clock.now.isoformat()} for f in heartbeats)

    @pytest.mark.asyncio
    async def test_failed_heartbeat_drops_subscriber(self, clock):
        registry = StreamRegistry(heartbeat_interval=0.01, clock=clock)
        channel = RecordingChannel(fail_after=1)
        await registry.subscribe(USER, channel)

        await asyncio.sleep(0.05)

        assert not registry.is_subscribed(USER)
        assert channel.closed is True


class TestQueueChannel:
    """Queue-backed channel and SSE rendering."""

    @pytest.mark.asyncio
    async def test_full_queue_is_a_write_failure(self):
        channel = QueueChannel(maxsize=1)
        await channel.send("one")

        with pytest.raises(ChannelClosed):
            await channel.send("two")

    @pytest.mark.asyncio
    async def test_closed_channel_rejects_writes(self):
        channel = QueueChannel()
        await channel.close()

        with pytest.raises(ChannelClosed):
            await channel.send("late")

    @pytest.mark.asyncio
    async def test_sse_events_render_and_unsubscribe(self, registry, clock):
        channel = QueueChannel(maxsize=10)
        await registry.subscribe(USER, channel)
        await registry.publish(USER, _notification(clock, title="Sync done"))
        await channel.close()

        events = [event async for event in sse_events(registry, USER, channel)]

        assert len(events) == 2
        assert all(e.startswith("data: ") and e.endswith("\n\n") for e in events)
        assert json.loads(events[1][len("data: "):])["title"] == "Sync done"
        assert not registry.is_subscribed(USER)
