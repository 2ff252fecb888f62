# =============================================================================
# school_core/sync/realtime.py
# Realtime Reconciler - folds pushed row changes into the cache
# =============================================================================
"""
RealtimeReconciler - one reference-counted channel per entity type.

Channel state machine:

    DISCONNECTED -> CONNECTING -> SUBSCRIBED
         ^                            |
         +------ network loss --------+   (reconnect with capped backoff)

    any state -> CLOSED                   (last subscriber left, terminal)

Push callbacks never touch the cache directly: they enqueue the payload and
a single consumer task on the event loop applies it, so realtime merges are
serialized with fetch completions and mutation steps.
"""

from __future__ import annotations
import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from school_core.data.entities import get_entity
from school_core.logging import get_logger
from .cache_store import CacheStore
from .changes import ChangeEvent

logger = get_logger(__name__)

ChangeCallback = Callable[[Mapping[str, Any]], None]
StatusCallback = Callable[[str, Optional[Exception]], None]

SUBSCRIBED_STATUS = "SUBSCRIBED"
LOST_STATUSES = {"CLOSED", "CHANNEL_ERROR", "TIMED_OUT"}


class ChannelState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


@dataclass(frozen=True)
class SubscriptionHandle:
    """Token returned by ``subscribe``; pass it back to ``unsubscribe``."""
    entity: str
    handle_id: str


@dataclass
class _Channel:
    entity: str
    state: ChannelState = ChannelState.DISCONNECTED
    refs: Set[str] = field(default_factory=set)
    remote: Any = None
    attempt: int = 0
    reconnect_task: Optional[asyncio.Task] = None


# =============================================================================
# CHANGE FEEDS
# =============================================================================

class ChangeFeed(ABC):
    """Source of row-level change notifications, one channel per entity."""

    @abstractmethod
    async def open(self, entity: str, on_change: ChangeCallback, on_status: StatusCallback) -> Any:
        """Open a channel; status updates arrive through ``on_status``."""

    @abstractmethod
    async def close(self, channel: Any) -> None:
        """Close a channel returned by ``open``."""


class SupabaseChangeFeed(ChangeFeed):
    """Postgres changes delivered by Supabase Realtime."""

    def __init__(self, client, schema: str = "public"):
        self.client = client
        self.schema = schema

    async def open(self, entity: str, on_change: ChangeCallback, on_status: StatusCallback) -> Any:
        table = get_entity(entity).table
        channel = self.client.channel(f"schoolhub:{table}:{uuid.uuid4().hex[:8]}")
        channel.on_postgres_changes("*", schema=self.schema, table=table, callback=on_change)

        def status_changed(status, error=None):
            on_status(str(getattr(status, "value", status)), error)

        await channel.subscribe(status_changed)
        return channel

    async def close(self, channel: Any) -> None:
        await self.client.remove_channel(channel)


# =============================================================================
# RECONCILER
# =============================================================================

class RealtimeReconciler:
    """
    Keeps cached collections current with pushed changes.

    Usage:
        reconciler = RealtimeReconciler(store, SupabaseChangeFeed(client))
        await reconciler.start()
        handle = await reconciler.subscribe("announcements")
        ...
        await reconciler.unsubscribe(handle)
    """

    def __init__(
        self,
        store: CacheStore,
        feed: ChangeFeed,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
    ):
        self.store = store
        self.feed = feed
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._channels: Dict[str, _Channel] = {}
        self._queue: "asyncio.Queue[Tuple[str, Mapping[str, Any]]]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the single consumer that applies queued changes."""
        if self._consumer is not None and not self._consumer.done():
            return
        self._loop = asyncio.get_running_loop()
        self._consumer = self._loop.create_task(self._consume(), name="realtime-consumer")
        logger.info("RealtimeReconciler started")

    async def close(self) -> None:
        """Close every channel and stop the consumer."""
        for channel in list(self._channels.values()):
            await self._close_channel(channel)
        self._channels.clear()
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        logger.info("RealtimeReconciler stopped")

    async def drain(self) -> None:
        """Wait until every queued change has been applied."""
        await self._queue.join()

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def subscribe(self, entity: str) -> SubscriptionHandle:
        """
        Add a subscriber for ``entity``; the first one opens the channel.

        A failed connection attempt does not fail the call: the channel stays
        DISCONNECTED and keeps retrying in the background.
        """
        get_entity(entity)
        if self._consumer is None:
            await self.start()

        handle = SubscriptionHandle(entity=entity, handle_id=uuid.uuid4().hex)
        channel = self._channels.get(entity)
        if channel is None:
            channel = _Channel(entity=entity)
            self._channels[entity] = channel

        channel.refs.add(handle.handle_id)
        if len(channel.refs) == 1 and channel.state is ChannelState.DISCONNECTED:
            await self._connect(channel)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Drop a subscriber; the last one closes the channel. Repeat calls are no-ops."""
        channel = self._channels.get(handle.entity)
        if channel is None or handle.handle_id not in channel.refs:
            return
        channel.refs.discard(handle.handle_id)
        if not channel.refs:
            await self._close_channel(channel)
            del self._channels[handle.entity]

    def state(self, entity: str) -> ChannelState:
        channel = self._channels.get(entity)
        return channel.state if channel is not None else ChannelState.CLOSED

    def subscriber_count(self, entity: str) -> int:
        channel = self._channels.get(entity)
        return len(channel.refs) if channel is not None else 0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (0-based), capped."""
        return min(self.backoff_cap, self.backoff_base * (2 ** attempt))

    # =========================================================================
    # CHANNEL MANAGEMENT
    # =========================================================================

    async def _open(self, channel: _Channel) -> None:
        remote = await self.feed.open(
            channel.entity,
            lambda payload, entity=channel.entity: self._enqueue(entity, payload),
            lambda status, error=None, ch=channel: self._on_status(ch, status, error),
        )
        if channel.state is ChannelState.CLOSED:
            # Last subscriber left while we were connecting
            await self.feed.close(remote)
            return
        channel.remote = remote

    async def _connect(self, channel: _Channel) -> bool:
        channel.state = ChannelState.CONNECTING
        try:
            await self._open(channel)
        except Exception as e:
            logger.warning(f"Realtime connect for {channel.entity} failed: {e}")
            if channel.state is not ChannelState.CLOSED:
                channel.state = ChannelState.DISCONNECTED
                self._schedule_reconnect(channel)
            return False
        return True

    def _on_status(self, channel: _Channel, status: str, error: Optional[Exception]) -> None:
        if channel.state is ChannelState.CLOSED:
            return
        if status == SUBSCRIBED_STATUS:
            channel.state = ChannelState.SUBSCRIBED
            channel.attempt = 0
            logger.info(f"Realtime channel for {channel.entity} subscribed")
        elif status in LOST_STATUSES:
            logger.warning(f"Realtime channel for {channel.entity} lost ({status}): {error}")
            channel.state = ChannelState.DISCONNECTED
            self._schedule_reconnect(channel)

    def _schedule_reconnect(self, channel: _Channel) -> None:
        if channel.reconnect_task is not None and not channel.reconnect_task.done():
            return
        loop = self._loop or asyncio.get_running_loop()
        channel.reconnect_task = loop.create_task(
            self._reconnect(channel), name=f"realtime-reconnect:{channel.entity}"
        )

    async def _reconnect(self, channel: _Channel) -> None:
        while channel.state is ChannelState.DISCONNECTED:
            delay = self.backoff_delay(channel.attempt)
            channel.attempt += 1
            logger.info(f"Reconnecting {channel.entity} channel in {delay:.1f}s (attempt {channel.attempt})")
            await asyncio.sleep(delay)
            if channel.state is not ChannelState.DISCONNECTED:
                return

            stale, channel.remote = channel.remote, None
            if stale is not None:
                try:
                    await self.feed.close(stale)
                except Exception as e:
                    logger.debug(f"Closing stale {channel.entity} channel failed: {e}")

            channel.state = ChannelState.CONNECTING
            try:
                await self._open(channel)
            except Exception as e:
                logger.warning(f"Realtime reconnect for {channel.entity} failed: {e}")
                if channel.state is ChannelState.CONNECTING:
                    channel.state = ChannelState.DISCONNECTED

    async def _close_channel(self, channel: _Channel) -> None:
        channel.state = ChannelState.CLOSED
        channel.refs.clear()
        task = channel.reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if channel.remote is not None:
            try:
                await self.feed.close(channel.remote)
            except Exception as e:
                logger.warning(f"Error closing {channel.entity} channel: {e}")
            channel.remote = None
        logger.info(f"Realtime channel for {channel.entity} closed")

    # =========================================================================
    # EVENT PIPELINE
    # =========================================================================

    def _enqueue(self, entity: str, payload: Mapping[str, Any]) -> None:
        """Push callback: hand the payload to the loop, never merge inline."""
        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._queue.put_nowait((entity, payload))
        else:
            loop.call_soon_threadsafe(self._queue.put_nowait, (entity, payload))

    async def _consume(self) -> None:
        while True:
            entity, payload = await self._queue.get()
            try:
                self._apply(entity, payload)
            except Exception as e:
                logger.error(f"Failed to apply {entity} change: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def _apply(self, entity: str, payload: Mapping[str, Any]) -> None:
        channel = self._channels.get(entity)
        if channel is None or channel.state is ChannelState.CLOSED:
            return
        event = ChangeEvent.from_payload(entity, payload)
        if event is None:
            logger.debug(f"Ignoring {entity} payload without a row id")
            return
        if not self.store.apply_change(event):
            logger.debug(f"No cached {entity} queries; dropped {event.operation.value} {event.record_id}")
