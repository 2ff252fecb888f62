# =============================================================================
# tests/unit/test_realtime.py
# Unit Tests for RealtimeReconciler
# =============================================================================

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from school_core.errors import ConfigurationError
from school_core.sync import ChannelState, QueryKey, RealtimeReconciler, SupabaseChangeFeed

ANNOUNCEMENTS = QueryKey.of("announcements", limit=20)


class TestSubscriptions:
    """Reference-counted channels"""

    @pytest.mark.asyncio
    async def test_first_subscriber_opens_channel(self, reconciler, feed):
        handle = await reconciler.subscribe("announcements")

        assert feed.opened == ["announcements"]
        assert reconciler.state("announcements") is ChannelState.SUBSCRIBED
        assert handle.entity == "announcements"

    @pytest.mark.asyncio
    async def test_channel_shared_and_closed_by_last_subscriber(self, reconciler, feed):
        first = await reconciler.subscribe("students")
        second = await reconciler.subscribe("students")
        assert feed.opened == ["students"]
        assert reconciler.subscriber_count("students") == 2

        await reconciler.unsubscribe(first)
        assert reconciler.state("students") is ChannelState.SUBSCRIBED
        assert feed.closed == []

        await reconciler.unsubscribe(second)
        assert reconciler.state("students") is ChannelState.CLOSED
        assert feed.closed == ["students"]

    @pytest.mark.asyncio
    async def test_double_unsubscribe_is_noop(self, reconciler, feed):
        keep = await reconciler.subscribe("students")
        drop = await reconciler.subscribe("students")

        await reconciler.unsubscribe(drop)
        await reconciler.unsubscribe(drop)

        assert reconciler.subscriber_count("students") == 1
        assert reconciler.state("students") is ChannelState.SUBSCRIBED
        await reconciler.unsubscribe(keep)

    @pytest.mark.asyncio
    async def test_resubscribe_after_close_opens_new_channel(self, reconciler, feed):
        handle = await reconciler.subscribe("students")
        await reconciler.unsubscribe(handle)
        await reconciler.subscribe("students")
        assert feed.opened == ["students", "students"]

    @pytest.mark.asyncio
    async def test_unknown_entity_rejected(self, reconciler):
        with pytest.raises(ConfigurationError):
            await reconciler.subscribe("grades")


class TestReconnect:
    """Capped exponential backoff"""

    def test_backoff_delay_is_capped(self, store, feed):
        reconciler = RealtimeReconciler(store, feed, backoff_base=1.0, backoff_cap=30.0)
        assert [reconciler.backoff_delay(n) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]

    @pytest.mark.asyncio
    async def test_lost_channel_reconnects(self, reconciler, feed):
        await reconciler.subscribe("announcements")

        feed.drop("announcements")
        assert reconciler.state("announcements") is ChannelState.DISCONNECTED

        await asyncio.sleep(0.1)
        assert feed.opened == ["announcements", "announcements"]
        assert feed.closed == ["announcements"]
        assert reconciler.state("announcements") is ChannelState.SUBSCRIBED

    @pytest.mark.asyncio
    async def test_failed_connect_keeps_retrying(self, reconciler, feed):
        feed.fail_opens = 2

        handle = await reconciler.subscribe("students")
        assert handle is not None
        assert reconciler.state("students") is ChannelState.DISCONNECTED

        await asyncio.sleep(0.2)
        assert feed.opened == ["students"] * 3
        assert reconciler.state("students") is ChannelState.SUBSCRIBED

    @pytest.mark.asyncio
    async def test_closing_stops_reconnect(self, reconciler, feed):
        feed.fail_opens = 100
        handle = await reconciler.subscribe("students")
        await reconciler.unsubscribe(handle)
        attempts = len(feed.opened)

        await asyncio.sleep(0.1)
        assert len(feed.opened) == attempts
        assert reconciler.state("students") is ChannelState.CLOSED


class TestEventPipeline:
    """Pushed changes reach the cache through the queue"""

    @pytest.fixture
    def announcements(self, gateway):
        gateway.seed("announcements", [
            {"id": "n1", "title": "Sports day", "created_at": "2024-05-01T08:00:00Z", "class_id": None},
            {"id": "n2", "title": "Exams", "created_at": "2024-05-02T08:00:00Z", "class_id": None},
        ])

    @pytest.mark.asyncio
    async def test_insert_applied_in_order(self, reconciler, feed, store, announcements):
        await store.load(ANNOUNCEMENTS)
        await reconciler.subscribe("announcements")

        feed.push("announcements", "insert", {"id": "n3", "title": "Trip", "created_at": "2024-05-03T08:00:00Z"})
        await reconciler.drain()

        assert [r["id"] for r in store.peek(ANNOUNCEMENTS).data] == ["n3", "n2", "n1"]

    @pytest.mark.asyncio
    async def test_replayed_events_are_idempotent(self, reconciler, feed, store, announcements):
        await store.load(ANNOUNCEMENTS)
        await reconciler.subscribe("announcements")
        record = {"id": "n3", "title": "Trip", "created_at": "2024-05-03T08:00:00Z"}

        feed.push("announcements", "insert", record)
        feed.push("announcements", "insert", record)
        feed.push("announcements", "delete", old={"id": "n1"})
        feed.push("announcements", "delete", old={"id": "n1"})
        await reconciler.drain()

        assert [r["id"] for r in store.peek(ANNOUNCEMENTS).data] == ["n3", "n2"]

    @pytest.mark.asyncio
    async def test_update_replaces_row(self, reconciler, feed, store, announcements):
        await store.load(ANNOUNCEMENTS)
        await reconciler.subscribe("announcements")

        feed.push("announcements", "update",
                  {"id": "n1", "title": "Sports day moved", "created_at": "2024-05-01T08:00:00Z"})
        await reconciler.drain()

        rows = store.peek(ANNOUNCEMENTS).data
        assert [r["title"] for r in rows] == ["Exams", "Sports day moved"]

    @pytest.mark.asyncio
    async def test_push_from_socket_thread(self, reconciler, feed, store, announcements):
        await store.load(ANNOUNCEMENTS)
        await reconciler.subscribe("announcements")

        thread = threading.Thread(
            target=feed.push,
            args=("announcements", "delete"),
            kwargs={"old": {"id": "n2"}},
        )
        thread.start()
        thread.join()
        await asyncio.sleep(0.01)
        await reconciler.drain()

        assert [r["id"] for r in store.peek(ANNOUNCEMENTS).data] == ["n1"]

    @pytest.mark.asyncio
    async def test_events_after_close_dropped(self, reconciler, feed, store, announcements):
        await store.load(ANNOUNCEMENTS)
        handle = await reconciler.subscribe("announcements")
        channel = feed.channels["announcements"]
        await reconciler.unsubscribe(handle)

        channel.on_change({"data": {"type": "DELETE", "old_record": {"id": "n1"}}})
        await reconciler.drain()

        assert len(store.peek(ANNOUNCEMENTS).data) == 2

    @pytest.mark.asyncio
    async def test_malformed_payload_does_not_stop_consumer(self, reconciler, feed, store, announcements):
        await store.load(ANNOUNCEMENTS)
        await reconciler.subscribe("announcements")

        feed.channels["announcements"].on_change({"data": None})
        feed.push("announcements", "delete", old={"id": "n1"})
        await reconciler.drain()

        assert [r["id"] for r in store.peek(ANNOUNCEMENTS).data] == ["n2"]


class TestSupabaseChangeFeed:
    """Adapter over client.channel(...)"""

    @pytest.mark.asyncio
    async def test_open_subscribes_to_table_changes(self, mock_supabase):
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        mock_supabase.channel.return_value = channel
        statuses = []

        feed = SupabaseChangeFeed(mock_supabase)
        result = await feed.open("announcements", lambda payload: None, lambda s, e=None: statuses.append(s))

        assert result is channel
        assert mock_supabase.channel.call_args[0][0].startswith("schoolhub:announcements:")
        _, kwargs = channel.on_postgres_changes.call_args
        assert kwargs["schema"] == "public"
        assert kwargs["table"] == "announcements"

        status_callback = channel.subscribe.call_args[0][0]
        status_callback("SUBSCRIBED", None)
        assert statuses == ["SUBSCRIBED"]

    @pytest.mark.asyncio
    async def test_close_removes_channel(self, mock_supabase):
        channel = MagicMock()
        await SupabaseChangeFeed(mock_supabase).close(channel)
        mock_supabase.remove_channel.assert_awaited_once_with(channel)
