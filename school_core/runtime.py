# =============================================================================
# school_core/runtime.py
# Sync Runtime - explicit construction and teardown of the sync layer
# =============================================================================
"""
SyncRuntime owns one instance of every sync component and the event loop
that drives them.

Streamlit re-runs page scripts on its own threads, while the cache, the
mutation coordinator and the realtime consumer must all live on a single
asyncio loop. The runtime starts that loop on a dedicated daemon thread and
lets the script thread submit coroutines to it with ``run``.

Usage:
    runtime = SyncRuntime(load_settings()).start()
    binding = runtime.bind(QueryKey.of("students", class_id=cid))
    state = runtime.run(binding.attach())
    ...
    runtime.stop()
"""

from __future__ import annotations
import asyncio
import threading
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from school_core.auth import AuthSession
from school_core.config import SyncSettings
from school_core.data.gateway import SupabaseGateway
from school_core.data.storage import FileStorage
from school_core.data.supabase_client import close_supabase_client, create_supabase_client
from school_core.logging import get_logger
from school_core.sync import (
    CacheStore,
    ChangeFeed,
    MutationCoordinator,
    QueryKey,
    RealtimeReconciler,
    SupabaseChangeFeed,
    ViewBinding,
)

logger = get_logger(__name__)

T = TypeVar("T")


class SyncRuntime:
    """
    Wires store, gateway, coordinator, reconciler and storage together.

    Nothing here is a module-level singleton: every page that needs the
    layer receives the runtime (the app keeps one per browser session).
    Streamlit has no hook for a closed browser tab, so a runtime nobody has
    used for ``settings.idle_timeout`` seconds stops itself; the page starts a
    new one on its next run. Signing out or switching user clears the cache.
    """

    STARTUP_TIMEOUT = 10.0
    SHUTDOWN_TIMEOUT = 10.0
    IDLE_CHECK_INTERVAL = 60.0

    def __init__(
        self,
        settings: SyncSettings,
        client=None,
        change_feed: Optional[ChangeFeed] = None,
    ):
        """
        Args:
            settings: Connection and tuning settings
            client: Pre-built Supabase ``AsyncClient``; created on start if omitted
            change_feed: Realtime source; defaults to Supabase Realtime
        """
        self.settings = settings
        self.client = client
        self._owns_client = client is None
        self._change_feed = change_feed

        self.auth: Optional[AuthSession] = None
        self.gateway: Optional[SupabaseGateway] = None
        self.store: Optional[CacheStore] = None
        self.coordinator: Optional[MutationCoordinator] = None
        self.reconciler: Optional[RealtimeReconciler] = None
        self.storage: Optional[FileStorage] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._stop_lock = threading.Lock()
        self._idle_task: Optional[asyncio.Task] = None
        self._last_used = time.monotonic()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> SyncRuntime:
        """Start the loop thread and build the components on it."""
        if self.is_running:
            return self

        self._ready.clear()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop,
            daemon=True,
            name="SchoolHubSync",
        )
        self._thread.start()
        if not self._ready.wait(timeout=self.STARTUP_TIMEOUT):
            raise RuntimeError("Sync event loop did not start")

        try:
            self.run(self._build(), timeout=self.STARTUP_TIMEOUT)
        except BaseException:
            self.stop()
            raise

        logger.info("Sync runtime started")
        return self

    def stop(self) -> None:
        """Close subscriptions, cancel fetches, close the client and join the thread."""
        with self._stop_lock:
            if not self.is_running:
                return
            try:
                self.run(self._teardown(), timeout=self.SHUTDOWN_TIMEOUT)
            except Exception as e:
                logger.error(f"Error during sync runtime shutdown: {e}")
            finally:
                self._loop.call_soon_threadsafe(self._loop.stop)
                self._thread.join(timeout=5)
                self._loop.close()
                self._thread = None
                self._loop = None
        logger.info("Sync runtime stopped")

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._ready.set)
        self._loop.run_forever()

    async def _build(self) -> None:
        if self.client is None:
            self.client = await create_supabase_client(self.settings)

        self.auth = AuthSession(self.client)
        self.gateway = SupabaseGateway(self.client, self.settings, credentials=self.auth.access_token)
        self.store = CacheStore(fetcher=self.gateway.fetch_query)
        self.auth.register_callback(self._on_user_changed)
        self.coordinator = MutationCoordinator(self.store, self.gateway)
        self.reconciler = RealtimeReconciler(
            self.store,
            self._change_feed or SupabaseChangeFeed(self.client, self.settings.schema),
            backoff_base=self.settings.realtime_backoff_base,
            backoff_cap=self.settings.realtime_backoff_cap,
        )
        await self.reconciler.start()
        self.storage = FileStorage(self.client, self.settings.storage_bucket)

        if self.settings.idle_timeout > 0:
            self._idle_task = asyncio.get_running_loop().create_task(
                self._watch_idle(), name="sync-idle-watch"
            )

    def _on_user_changed(self, user) -> None:
        # Cached rows were filtered by the previous user's row-level security
        self.store.clear()
        logger.info(f"Cache cleared for {user.email if user else 'signed-out session'}")

    async def _watch_idle(self) -> None:
        """Stop the runtime once no work was submitted for ``idle_timeout`` seconds."""
        timeout = self.settings.idle_timeout
        while True:
            await asyncio.sleep(min(timeout, self.IDLE_CHECK_INTERVAL))
            idle = time.monotonic() - self._last_used
            if idle >= timeout:
                logger.info(f"Sync runtime idle for {idle:.0f}s, stopping")
                # stop() joins this loop's thread, so it cannot run on it
                threading.Thread(target=self.stop, daemon=True, name="SchoolHubSyncIdleStop").start()
                return

    async def _teardown(self) -> None:
        task = self._idle_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._idle_task = None
        if self.reconciler is not None:
            await self.reconciler.close()
        if self.store is not None:
            await self.store.close()
        if self._owns_client:
            await close_supabase_client(self.client)
            self.client = None

    # =========================================================================
    # SUBMITTING WORK
    # =========================================================================

    def run(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Run a coroutine on the sync loop and wait for its result."""
        if self._loop is None or not self.is_running:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise RuntimeError("Sync runtime is not running")
        self._last_used = time.monotonic()
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout)

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a plain function on the sync loop (store methods are not thread-safe)."""
        async def invoke():
            return fn(*args, **kwargs)

        return self.run(invoke())

    def bind(self, key: QueryKey, **kwargs) -> ViewBinding:
        """Create a binding for ``key``; attach it with ``run(binding.attach())``."""
        if self.store is None:
            raise RuntimeError("Sync runtime is not started")
        return ViewBinding(
            self.store,
            key,
            coordinator=self.coordinator,
            reconciler=self.reconciler,
            **kwargs,
        )
