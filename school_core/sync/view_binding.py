# =============================================================================
# school_core/sync/view_binding.py
# View Binding - what a page sees of one query
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from school_core.logging import get_logger
from .cache_store import CacheEntry, CacheStore, Fetcher, QueryStatus
from .mutations import BulkMutationResult, MutationCoordinator
from .query_key import QueryKey
from .realtime import RealtimeReconciler, SubscriptionHandle

logger = get_logger(__name__)


@dataclass(frozen=True)
class ViewState:
    """Render-ready projection of a cache entry."""
    data: Any = None
    is_loading: bool = False
    is_error: bool = False
    error: Optional[Exception] = None

    @classmethod
    def from_entry(cls, entry: Optional[CacheEntry]) -> ViewState:
        if entry is None:
            return cls()
        return cls(
            data=entry.data,
            is_loading=entry.status is QueryStatus.LOADING,
            is_error=entry.status is QueryStatus.ERROR,
            error=entry.error,
        )


class ViewBinding:
    """
    Binds one page component to one Query Key.

    The binding keeps no data of its own: ``state`` is always derived from
    the shared CacheStore, and every write goes through the coordinator.

    Usage:
        binding = ViewBinding(store, QueryKey.of("students", class_id=cid),
                              coordinator=coordinator, reconciler=reconciler)
        await binding.attach()
        state = await binding.load()
        await binding.create({"full_name": "Ada", "class_id": cid})
        await binding.detach()
    """

    def __init__(
        self,
        store: CacheStore,
        key: QueryKey,
        coordinator: Optional[MutationCoordinator] = None,
        reconciler: Optional[RealtimeReconciler] = None,
        fetcher: Optional[Fetcher] = None,
        on_change: Optional[Callable[[ViewState], None]] = None,
    ):
        self.store = store
        self.key = key
        self.coordinator = coordinator
        self.reconciler = reconciler
        self.fetcher = fetcher
        self.on_change = on_change
        self._unlisten: Optional[Callable[[], None]] = None
        self._subscription: Optional[SubscriptionHandle] = None

    @property
    def entity(self) -> str:
        return self.key.entity

    @property
    def attached(self) -> bool:
        return self._unlisten is not None

    @property
    def state(self) -> ViewState:
        return ViewState.from_entry(self.store.peek(self.key))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def attach(self) -> ViewState:
        """Start watching the key: listener, realtime subscription, initial fetch."""
        if self.attached:
            return self.state
        self._unlisten = self.store.subscribe(self.key, self._changed)
        if self.reconciler is not None:
            self._subscription = await self.reconciler.subscribe(self.entity)
        logger.debug(f"Attached view to {self.key}")
        return ViewState.from_entry(self.store.get(self.key, self.fetcher))

    async def detach(self) -> None:
        """Stop watching. In-flight fetches keep running and fill the shared cache."""
        if self._unlisten is not None:
            self._unlisten()
            self._unlisten = None
        if self._subscription is not None and self.reconciler is not None:
            await self.reconciler.unsubscribe(self._subscription)
            self._subscription = None
        logger.debug(f"Detached view from {self.key}")

    async def load(self) -> ViewState:
        """Wait for the current fetch (starting one if needed) and return the state."""
        return ViewState.from_entry(await self.store.load(self.key, self.fetcher))

    def refetch(self):
        """Caller-driven retry after an error."""
        if self.fetcher is not None:
            self.store.register_fetcher(self.key, self.fetcher)
        return self.store.refetch(self.key)

    def _changed(self, entry: CacheEntry) -> None:
        if self.on_change is not None:
            self.on_change(ViewState.from_entry(entry))

    # =========================================================================
    # MUTATION TRIGGERS
    # =========================================================================

    def _require_coordinator(self) -> MutationCoordinator:
        if self.coordinator is None:
            raise RuntimeError(f"Binding for {self.key} is read-only")
        return self.coordinator

    async def create(self, payload: Mapping[str, Any]):
        return await self._require_coordinator().create(self.entity, payload)

    async def update(self, record_id: Any, changes: Mapping[str, Any]):
        return await self._require_coordinator().update(self.entity, record_id, changes)

    async def delete(self, record_id: Any):
        return await self._require_coordinator().delete(self.entity, record_id)

    async def bulk(self, operation: Any, payloads, batched: bool = True) -> BulkMutationResult:
        return await self._require_coordinator().bulk_mutate(self.entity, operation, payloads, batched)
