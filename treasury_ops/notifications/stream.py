"""
Live notification streams.

The registry maps each subscriber (user) to exactly one open output channel
plus an optional notification-type filter. Delivery is at-most-once and
best-effort: nothing is queued for offline users, and a channel that fails a
write is dropped instead of failing the publisher. Anything a subscriber
missed stays queryable from the notification store.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import datetime
import json
from typing import Protocol

import structlog

from treasury_ops.notifications.models import Notification, NotificationType
from treasury_ops.utils.clock import Clock, utc_now
from treasury_ops.utils.locks import KeyedLock

logger = structlog.get_logger(__name__)

CONNECTED_MESSAGE = "Notification stream established"


class ChannelClosed(Exception):
    """Raised by a channel that can no longer accept frames."""


class OutputChannel(Protocol):
    """Server-to-client push channel carrying JSON text frames."""

    async def send(self, frame: str) -> None: ...

    async def close(self) -> None: ...


class QueueChannel:
    """
    Bounded in-process channel feeding a streaming HTTP response.

    A subscriber that stops draining fills the queue; the next write then
    fails and the registry drops the subscriber.
    """

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: str) -> None:
        if self._closed:
            raise ChannelClosed("channel is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull as e:
            raise ChannelClosed("subscriber is not draining its stream") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # reader drains the backlog then sees the closed flag
            pass

    async def frames(self) -> AsyncIterator[str]:
        """Yield frames until the channel is closed and drained."""
        while not (self._closed and self._queue.empty()):
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


@dataclass
class StreamConnection:
    """One subscriber's live channel."""

    user_id: str
    channel: OutputChannel
    types: frozenset[NotificationType] = frozenset()
    connected_at: datetime | None = None
    heartbeat: asyncio.Task | None = field(default=None, repr=False)

    def accepts(self, notification_type: NotificationType) -> bool:
        return not self.types or notification_type in self.types


def heartbeat_frame(now: datetime) -> str:
    return json.dumps({"type": "heartbeat", "timestamp": now.isoformat()})


def connected_frame(message: str = CONNECTED_MESSAGE) -> str:
    return json.dumps({"type": "connected", "message": message})


class StreamRegistry:
    """
    Process-wide map of subscriber -> live connection.

    Operations touching the same user are serialized by a per-user lock so a
    frame is never written to a channel concurrently with its removal.
    Operations for different users run independently.
    """

    def __init__(self, heartbeat_interval: float = 30.0, clock: Clock = utc_now):
        self._connections: dict[str, StreamConnection] = {}
        self._locks = KeyedLock()
        self._heartbeat_interval = heartbeat_interval
        self._clock = clock

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def is_subscribed(self, user_id: str) -> bool:
        return user_id in self._connections

    async def subscribe(
        self,
        user_id: str,
        channel: OutputChannel,
        types: Iterable[NotificationType] | None = None,
    ) -> StreamConnection:
        """
        Register ``channel`` as the live connection for ``user_id``.

        A previous connection for the same user is evicted and closed. The
        first frame written is the ``connected`` acknowledgement; a heartbeat
        then runs for as long as the connection stays registered.
        """
        async with self._locks.hold(user_id):
            previous = self._connections.pop(user_id, None)
            if previous is not None:
                logger.info("Replacing notification stream", user_id=user_id)
                await self._teardown(previous)

            connection = StreamConnection(
                user_id=user_id,
                channel=channel,
                types=frozenset(types or ()),
                connected_at=self._clock(),
            )
            await channel.send(connected_frame())
            self._connections[user_id] = connection
            connection.heartbeat = asyncio.create_task(
                self._heartbeat(connection), name=f"heartbeat-{user_id}"
            )

        logger.info(
            "Notification stream opened",
            user_id=user_id,
            types=sorted(t.value for t in connection.types),
            connections=self.connection_count,
        )
        return connection

    async def publish(self, user_id: str, notification: Notification) -> bool:
        """
        Write ``notification`` to the user's live channel if it passes the filter.

        Returns whether a frame was written. Never raises for delivery
        problems: a failed write unsubscribes the user.
        """
        async with self._locks.hold(user_id):
            connection = self._connections.get(user_id)
            if connection is None or not connection.accepts(notification.type):
                return False

            frame = json.dumps(notification.to_frame(), default=str)
            try:
                await connection.channel.send(frame)
            except Exception as e:
                logger.warning(
                    "Stream write failed, dropping subscriber",
                    user_id=user_id,
                    notification_id=notification.notification_id,
                    error=str(e),
                )
                self._connections.pop(user_id, None)
                await self._teardown(connection)
                return False

        logger.debug(
            "Notification delivered",
            user_id=user_id,
            notification_id=notification.notification_id,
            type=notification.type.value,
        )
        return True

    async def unsubscribe(self, user_id: str, channel: OutputChannel | None = None) -> bool:
        """
        Remove the user's connection and stop its heartbeat.

        When ``channel`` is given, only that exact channel is removed, so the
        cleanup of an evicted stream cannot remove its replacement.
        """
        async with self._locks.hold(user_id):
            connection = self._connections.get(user_id)
            if connection is None:
                return False
            if channel is not None and connection.channel is not channel:
                return False
            del self._connections[user_id]
            await self._teardown(connection)

        logger.info(
            "Notification stream closed", user_id=user_id, connections=self.connection_count
        )
        return True

    async def close(self) -> None:
        """Close every open stream (process shutdown)."""
        for user_id in list(self._connections):
            await self.unsubscribe(user_id)

    async def _teardown(self, connection: StreamConnection) -> None:
        heartbeat = connection.heartbeat
        if heartbeat is not None and heartbeat is not asyncio.current_task():
            heartbeat.cancel()
        try:
            await connection.channel.close()
        except Exception as e:
            logger.debug("Closing stream channel failed", user_id=connection.user_id, error=str(e))

    async def _heartbeat(self, connection: StreamConnection) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            async with self._locks.hold(connection.user_id):
                if self._connections.get(connection.user_id) is not connection:
                    return
                try:
                    await connection.channel.send(heartbeat_frame(self._clock()))
                except Exception as e:
                    logger.info(
                        "Heartbeat failed, dropping subscriber",
                        user_id=connection.user_id,
                        error=str(e),
                    )
                    del self._connections[connection.user_id]
                    await self._teardown(connection)
                    return


async def sse_events(
    registry: StreamRegistry, user_id: str, channel: QueueChannel
) -> AsyncIterator[str]:
    """Render a subscribed channel as Server-Sent Events, unsubscribing on exit."""
    try:
        async for frame in channel.frames():
            yield f"data: {frame}\n\n"
    finally:
        await registry.unsubscribe(user_id, channel)
