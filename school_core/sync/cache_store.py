# =============================================================================
# school_core/sync/cache_store.py
# Cache Store - process-local query cache with fetch ordering
# =============================================================================
"""
CacheStore - owns every cached result set, keyed by QueryKey.

All reads and writes go through this class. It is driven by a single asyncio
event loop: every public method runs to completion without awaiting, so two
updates can never interleave mid-way. Network fetches are the only
suspension points and their responses are ordered by a per-key sequence
number - a response is applied only if no newer fetch, write or
invalidation happened for that key since it was dispatched.
"""

from __future__ import annotations
import asyncio
import copy
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from school_core.data.entities import ENTITIES
from school_core.errors import SchoolSyncError
from school_core.logging import get_logger
from .changes import ChangeEvent, apply_change
from .query_key import QueryKey

logger = get_logger(__name__)

Fetcher = Callable[[QueryKey], Awaitable[Any]]
Listener = Callable[["CacheEntry"], None]
KeyPredicate = Callable[[QueryKey], bool]


class QueryStatus(Enum):
    """Lifecycle of a cached query."""
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class CacheEntry:
    """Last known value of one query and its freshness."""
    key: QueryKey
    data: Any = None
    status: QueryStatus = QueryStatus.IDLE
    error: Optional[Exception] = None
    last_updated: Optional[datetime] = None
    stale: bool = True

    def copy(self) -> CacheEntry:
        """Detached copy handed to callers; mutating it never touches the store."""
        return replace(self, data=copy.deepcopy(self.data))


class CacheStore:
    """
    Shared cache of query results.

    Usage:
        store = CacheStore(fetcher=gateway.fetch_query)
        entry = store.get(QueryKey.of("students", class_id="A"))
        if entry.status is QueryStatus.LOADING:
            ...
    """

    def __init__(self, fetcher: Optional[Fetcher] = None):
        """
        Args:
            fetcher: Default coroutine function resolving a key to its data
        """
        self._default_fetcher = fetcher
        self._fetchers: Dict[QueryKey, Fetcher] = {}
        self._entries: Dict[QueryKey, CacheEntry] = {}
        self._seq: Dict[QueryKey, int] = {}
        self._inflight: Dict[QueryKey, Tuple[int, asyncio.Task]] = {}
        self._buffered: Dict[QueryKey, List[ChangeEvent]] = {}
        self._listeners: Dict[QueryKey, List[Listener]] = {}
        self._closed = False

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, key: QueryKey, fetcher: Optional[Fetcher] = None) -> CacheEntry:
        """
        Return the cached entry, starting a fetch if it is absent or stale.

        At most one fetch per key is in flight through this path; repeated
        calls while it runs just return the loading entry.
        """
        if fetcher is not None:
            self._fetchers[key] = fetcher

        entry = self._entry(key)
        if entry.stale and key not in self._inflight and self._fetcher_for(key) is not None:
            self._dispatch(key)
        return entry.copy()

    def register_fetcher(self, key: QueryKey, fetcher: Fetcher) -> None:
        """Use ``fetcher`` instead of the default one for ``key``."""
        self._fetchers[key] = fetcher

    def peek(self, key: QueryKey) -> Optional[CacheEntry]:
        """Return the entry without triggering a fetch (None if never cached)."""
        entry = self._entries.get(key)
        return entry.copy() if entry is not None else None

    async def load(self, key: QueryKey, fetcher: Optional[Fetcher] = None) -> CacheEntry:
        """Like ``get`` but waits until no fetch for the key is in flight."""
        self.get(key, fetcher)
        while key in self._inflight:
            _, task = self._inflight[key]
            await asyncio.wait({task})
            # An invalidation may have superseded the fetch we waited on
            self.get(key)
        return self._entry(key).copy()

    def refetch(self, key: QueryKey) -> asyncio.Task:
        """Dispatch a fresh fetch, superseding any in-flight one."""
        if self._fetcher_for(key) is None:
            raise LookupError(f"No fetcher registered for {key}")
        self._entry(key)
        return self._dispatch(key)

    def keys(self, predicate: Optional[KeyPredicate] = None) -> List[QueryKey]:
        return [key for key in self._entries if predicate is None or predicate(key)]

    def is_fetching(self, key: QueryKey) -> bool:
        return key in self._inflight

    def sequence(self, key: QueryKey) -> int:
        """Highest sequence number issued for ``key`` so far."""
        return self._seq.get(key, 0)

    # =========================================================================
    # WRITES
    # =========================================================================

    def set(self, key: QueryKey, data: Any, status: QueryStatus = QueryStatus.SUCCESS) -> None:
        """Authoritative write; responses of fetches dispatched earlier are discarded."""
        self._next_seq(key)
        self._inflight.pop(key, None)
        entry = self._entry(key)
        entry.data = copy.deepcopy(data)
        entry.status = status
        entry.error = None
        entry.stale = False
        entry.last_updated = datetime.now()
        self._replay_buffered(entry)
        self._notify(key)

    def patch(self, key: QueryKey, fn: Callable[[Any], Any]) -> bool:
        """Replace an existing entry's data with ``fn(data)``. Returns False if uncached."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.data = fn(copy.deepcopy(entry.data))
        self._notify(key)
        return True

    def snapshot(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return copy.deepcopy(entry.data) if entry is not None else None

    def restore(self, key: QueryKey, data: Any) -> None:
        """Put back data captured with ``snapshot`` (rollback path)."""
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.data = copy.deepcopy(data)
        self._notify(key)

    def invalidate(self, predicate: KeyPredicate) -> List[QueryKey]:
        """
        Mark every matching entry stale.

        Entries someone is watching, or that were already loading, re-fetch
        right away; the rest re-fetch on their next ``get``. An in-flight fetch
        for a matching key is superseded by the new one.

        Returns:
            The invalidated keys
        """
        matched = [key for key in self._entries if predicate(key)]
        for key in matched:
            entry = self._entries[key]
            entry.stale = True
            loading = key in self._inflight
            if (loading or self._listeners.get(key)) and self._fetcher_for(key) is not None:
                self._dispatch(key)
            elif loading:
                self._next_seq(key)
                self._inflight.pop(key)
        if matched:
            logger.debug(f"Invalidated {len(matched)} queries: {', '.join(map(str, matched))}")
        return matched

    def apply_change(self, event: ChangeEvent) -> bool:
        """
        Merge a pushed change into every cached entry of the same entity.

        Entries that are loading hold the event until their fetch settles.

        Returns:
            False when no entry of that entity is cached (event dropped)
        """
        keys = [key for key in self._entries if key.entity == event.entity]
        if not keys:
            return False

        for key in keys:
            entry = self._entries[key]
            if entry.status is QueryStatus.LOADING:
                self._buffered.setdefault(key, []).append(event)
                continue
            self._merge(entry, event)
            self._notify(key)
        return True

    def buffered_count(self, key: QueryKey) -> int:
        return len(self._buffered.get(key, []))

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns the function that removes it."""
        listeners = self._listeners.setdefault(key, [])
        listeners.append(listener)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return unsubscribe

    def has_listeners(self, key: QueryKey) -> bool:
        return bool(self._listeners.get(key))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def clear(self) -> None:
        for _, task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
        self._entries.clear()
        self._buffered.clear()
        self._seq.clear()

    async def close(self) -> None:
        """Cancel in-flight fetches and drop all state."""
        self._closed = True
        tasks = [task for _, task in self._inflight.values()]
        self.clear()
        self._listeners.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("CacheStore closed")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _entry(self, key: QueryKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
        return entry

    def _fetcher_for(self, key: QueryKey) -> Optional[Fetcher]:
        return self._fetchers.get(key, self._default_fetcher)

    def _next_seq(self, key: QueryKey) -> int:
        seq = self._seq.get(key, 0) + 1
        self._seq[key] = seq
        return seq

    def _dispatch(self, key: QueryKey) -> asyncio.Task:
        if self._closed:
            raise RuntimeError("CacheStore is closed")
        seq = self._next_seq(key)
        entry = self._entry(key)
        entry.status = QueryStatus.LOADING
        task = asyncio.get_running_loop().create_task(
            self._run_fetch(key, seq, self._fetcher_for(key)),
            name=f"fetch:{key}#{seq}",
        )
        self._inflight[key] = (seq, task)
        self._notify(key)
        return task

    async def _run_fetch(self, key: QueryKey, seq: int, fetcher: Fetcher) -> None:
        try:
            data = await fetcher(key)
        except asyncio.CancelledError:
            raise
        except SchoolSyncError as e:
            logger.warning(f"Fetch {key} #{seq} failed: {e}")
            self._settle(key, seq, error=e)
        except Exception as e:
            logger.error(f"Fetch {key} #{seq} raised unexpectedly: {e}", exc_info=True)
            self._settle(key, seq, error=e)
        else:
            self._settle(key, seq, data=data)
        finally:
            current = self._inflight.get(key)
            if current is not None and current[0] == seq:
                del self._inflight[key]

    def _settle(self, key: QueryKey, seq: int, data: Any = None, error: Optional[Exception] = None) -> None:
        if seq < self._seq.get(key, 0):
            logger.debug(f"Discarding superseded response for {key} (#{seq} < #{self._seq[key]})")
            return

        entry = self._entry(key)
        entry.stale = False
        if error is not None:
            # Previous data stays on screen next to the error
            entry.status = QueryStatus.ERROR
            entry.error = error
        else:
            entry.data = data
            entry.status = QueryStatus.SUCCESS
            entry.error = None
            entry.last_updated = datetime.now()

        self._inflight.pop(key, None)
        self._replay_buffered(entry)
        self._notify(key)

    def _replay_buffered(self, entry: CacheEntry) -> None:
        events = self._buffered.pop(entry.key, [])
        for event in events:
            self._merge(entry, event)
        if events:
            logger.debug(f"Replayed {len(events)} buffered changes into {entry.key}")

    def _merge(self, entry: CacheEntry, event: ChangeEvent) -> None:
        if entry.data is None and not entry.key.is_detail and entry.status is not QueryStatus.SUCCESS:
            return
        entry.data = apply_change(entry.data, event, entry.key, ENTITIES.get(event.entity))

    def _notify(self, key: QueryKey) -> None:
        listeners = list(self._listeners.get(key, []))
        if not listeners:
            return
        snapshot = self._entries[key].copy()
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Error in cache listener for {key}: {e}")
