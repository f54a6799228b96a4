"""
Tests for the notification service.

Covers creation and live delivery, filtered paging with unread counts,
ownership checks, the expiry sweep and the named constructors.
"""

from datetime import timedelta
import json

import pytest

from treasury_ops.errors import InvalidRequest, NotFound, StoreError
from treasury_ops.notifications.models import NotificationFilter, NotificationType, SortDirection

from .conftest import RecordingChannel

USER = "rm-alice"
OTHER = "rm-bob"


async def _alert(service, user_id=USER, title="Alert", **kwargs):
    return await service.create(user_id, NotificationType.SYSTEM_ALERT, title, "message", **kwargs)


class TestCreate:
    """Persist then deliver."""

    @pytest.mark.asyncio
    async def test_create_persists_unread(self, notifications, store, clock):
        notification = await _alert(notifications, data={"k": "v"})

        stored = await store.get_notification(notification.notification_id)
        assert stored.read is False
        assert stored.data == {"k": "v"}
        assert stored.created_at == clock.now

    @pytest.mark.asyncio
    async def test_create_pushes_to_live_stream(self, notifications, registry):
        channel = RecordingChannel()
        await registry.subscribe(USER, channel)

        notification = await _alert(notifications, title="Rates moved")

        frame = json.loads(channel.frames[-1])
        assert frame["id"] == notification.notification_id
        assert frame["title"] == "Rates moved"
        assert frame["type"] == "SYSTEM_ALERT"
        assert frame["read"] is False
        assert "createdAt" in frame
        await registry.close()

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_fail_create(self, notifications, registry, store):
        channel = RecordingChannel(fail_after=1)
        await registry.subscribe(USER, channel)

        notification = await _alert(notifications)

        assert await store.get_notification(notification.notification_id) is not None
        assert not registry.is_subscribed(USER)

    @pytest.mark.asyncio
    async def test_live_stream_order_matches_creation_order(self, notifications, registry):
        channel = RecordingChannel()
        await registry.subscribe(USER, channel)

        created = [await _alert(notifications, title=f"n{i}") for i in range(5)]

        delivered = [json.loads(f)["id"] for f in channel.frames[1:]]
        assert delivered == [n.notification_id for n in created]
        await registry.close()


class TestQuery:
    """Filtering, paging and counts."""

    @pytest.mark.asyncio
    async def test_unread_count_is_independent_of_page(self, notifications, clock):
        for i in range(5):
            await _alert(notifications, title=f"n{i}")
            clock.advance(seconds=1)
        await _alert(notifications, user_id=OTHER)

        page = await notifications.query(USER, page=2, limit=2)

        assert page.total == 5
        assert page.unread_count == 5
        assert page.total_pages == 3
        assert [n.title for n in page.notifications] == ["n2", "n1"]

    @pytest.mark.asyncio
    async def test_unread_count_after_mark_read(self, notifications):
        created = [await _alert(notifications) for _ in range(3)]
        await notifications.mark_read(created[0].notification_id, USER)

        page = await notifications.query(USER)
        read_only = await notifications.query(USER, NotificationFilter(read=True))
        unread_only = await notifications.query(USER, NotificationFilter(read=False))

        assert page.total == 3
        assert page.unread_count == 2
        assert read_only.total == 1
        assert read_only.unread_count == 0
        assert unread_only.total == 2
        assert unread_only.unread_count == 2

    @pytest.mark.asyncio
    async def test_type_filter_scopes_unread_count(self, notifications):
        await _alert(notifications)
        await notifications.create(USER, NotificationType.CLIENT_UPDATED, "t", "m")
        await notifications.create(USER, NotificationType.CLIENT_UPDATED, "t", "m")

        page = await notifications.query(USER, NotificationFilter(type=NotificationType.CLIENT_UPDATED))

        assert page.total == 2
        assert page.unread_count == 2
        assert all(n.type == NotificationType.CLIENT_UPDATED for n in page.notifications)

    @pytest.mark.asyncio
    async def test_sort_ascending_by_title(self, notifications):
        for title in ["b", "c", "a"]:
            await _alert(notifications, title=title)

        page = await notifications.query(USER, sort_by="title", sort_dir=SortDirection.ASC)

        assert [n.title for n in page.notifications] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_invalid_paging_and_sort(self, notifications):
        with pytest.raises(InvalidRequest):
            await notifications.query(USER, page=0)
        with pytest.raises(InvalidRequest):
            await notifications.query(USER, sort_by="user_id")

    @pytest.mark.asyncio
    async def test_empty_result(self, notifications):
        page = await notifications.query(USER)

        assert page.notifications == []
        assert page.total == 0
        assert page.total_pages == 0


class TestReadAndDelete:
    """Ownership-checked mutations."""

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, notifications):
        notification = await _alert(notifications)

        first = await notifications.mark_read(notification.notification_id, USER)
        second = await notifications.mark_read(notification.notification_id, USER)

        assert first.read is True
        assert second.read is True

    @pytest.mark.asyncio
    async def test_mark_read_requires_ownership(self, notifications):
        notification = await _alert(notifications)

        with pytest.raises(NotFound):
            await notifications.mark_read(notification.notification_id, OTHER)
        with pytest.raises(NotFound):
            await notifications.mark_read("missing", USER)

    @pytest.mark.asyncio
    async def test_mark_all_read_counts_only_flipped(self, notifications):
        created = [await _alert(notifications) for _ in range(3)]
        await _alert(notifications, user_id=OTHER)
        await notifications.mark_read(created[0].notification_id, USER)

        assert await notifications.mark_all_read(USER) == 2
        assert await notifications.mark_all_read(USER) == 0
        other = await notifications.query(OTHER)
        assert other.unread_count == 1

    @pytest.mark.asyncio
    async def test_delete(self, notifications):
        notification = await _alert(notifications)

        with pytest.raises(NotFound):
            await notifications.delete(notification.notification_id, OTHER)
        await notifications.delete(notification.notification_id, USER)
        with pytest.raises(NotFound):
            await notifications.get(notification.notification_id, USER)


class TestExpirySweep:
    """Batched deletion of expired notifications."""

    @pytest.mark.asyncio
    async def test_sweep_deletes_only_expired(self, notifications, clock):
        now = clock.now
        expired = [
            await _alert(notifications, expires_at=now - timedelta(minutes=1)),
            await _alert(notifications, expires_at=now),
            await _alert(notifications, expires_at=now - timedelta(days=1)),
        ]
        keep = [
            await _alert(notifications, expires_at=now + timedelta(minutes=1)),
            await _alert(notifications),
        ]

        assert await notifications.expire_sweep() == 3
        assert await notifications.expire_sweep() == 0

        for n in expired:
            with pytest.raises(NotFound):
                await notifications.get(n.notification_id, USER)
        for n in keep:
            assert await notifications.get(n.notification_id, USER)

    @pytest.mark.asyncio
    async def test_sweep_continues_past_failing_batch(self, notifications, store, clock):
        for _ in range(5):
            await _alert(notifications, expires_at=clock.now - timedelta(seconds=1))

        real_delete = store.delete_notifications
        calls = []

        async def flaky_delete(ids):
            calls.append(list(ids))
            if len(calls) == 1:
                raise StoreError("disk full")
            return await real_delete(ids)

        store.delete_notifications = flaky_delete

        deleted = await notifications.expire_sweep()

        # batches of two: the first fails, the other three rows are removed
        assert [len(batch) for batch in calls] == [2, 2, 1]
        assert deleted == 3
        assert await notifications.expire_sweep() == 2


class TestNamedConstructors:
    """Templated notifications."""

    @pytest.mark.asyncio
    async def test_processing_complete(self, notifications, clock):
        n = await notifications.processing_complete(USER, "c-1", "Acme Corp", "t-1", 120)

        assert n.type == NotificationType.PROCESSING_COMPLETE
        assert n.title == "Statement Processing Complete"
        assert "Acme Corp" in n.message
        assert n.data["taskId"] == "t-1"
        assert n.data["transactionCount"] == 120
        assert n.expires_at == clock.now + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_processing_failed(self, notifications):
        n = await notifications.processing_failed(USER, "c-1", "Acme Corp", "t-1", "bad file")

        assert n.type == NotificationType.PROCESSING_FAILED
        assert n.message == "Processing failed for Acme Corp statements: bad file"
        assert n.data["error"] == "bad file"

    @pytest.mark.asyncio
    async def test_system_alert_uses_alert_retention(self, notifications, clock):
        n = await notifications.system_alert(USER, "Maintenance", "Tonight at 22:00")

        assert n.type == NotificationType.SYSTEM_ALERT
        assert n.expires_at == clock.now + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_remaining_constructors(self, notifications):
        made = [
            await notifications.recommendation_ready(USER, "c-1", "Acme", "r-1", "HIGH", 12_000.0),
            await notifications.statement_uploaded(USER, "c-1", "Acme", "jan.pdf", 2048),
            await notifications.workflow_task_assigned(USER, "w-1", "KYC_REVIEW", "c-1", "Acme", "HIGH"),
            await notifications.workflow_task_completed(USER, "w-1", "KYC_REVIEW", "c-1", "Acme", "rm-bob"),
            await notifications.client_updated(USER, "c-1", "Acme", "profile", ["address"]),
        ]

        assert [n.type for n in made] == [
            NotificationType.RECOMMENDATION_READY,
            NotificationType.STATEMENT_UPLOADED,
            NotificationType.WORKFLOW_TASK_ASSIGNED,
            NotificationType.WORKFLOW_TASK_COMPLETED,
            NotificationType.CLIENT_UPDATED,
        ]
        assert made[2].message == "kyc review task has been assigned to you"
        assert made[0].message == "HIGH priority recommendation generated for Acme"
