# =============================================================================
# school_core/sync/__init__.py
# Client-side data synchronization layer
# =============================================================================
"""
Synchronization layer for SchoolHub.

    ViewBinding ──> CacheStore <── RealtimeReconciler <── Supabase Realtime
         │             ^
         v             │
    MutationCoordinator ──> SupabaseGateway ──> Supabase (PostgREST)

Every component receives the single CacheStore instance it works on; there
are no module-level singletons. ``school_core.runtime.SyncRuntime`` wires
them together.
"""

from .query_key import QueryKey
from .changes import ChangeEvent, ChangeOperation
from .cache_store import CacheEntry, CacheStore, QueryStatus
from .mutations import (
    BulkMutationResult,
    MutationCoordinator,
    MutationState,
    PendingMutation,
)
from .realtime import (
    ChangeFeed,
    ChannelState,
    RealtimeReconciler,
    SubscriptionHandle,
    SupabaseChangeFeed,
)
from .view_binding import ViewBinding, ViewState

__all__ = [
    "QueryKey",
    "ChangeEvent",
    "ChangeOperation",
    "CacheEntry",
    "CacheStore",
    "QueryStatus",
    "BulkMutationResult",
    "MutationCoordinator",
    "MutationState",
    "PendingMutation",
    "ChangeFeed",
    "ChannelState",
    "RealtimeReconciler",
    "SubscriptionHandle",
    "SupabaseChangeFeed",
    "ViewBinding",
    "ViewState",
]
