# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from school_core.data.entities import get_entity
from school_core.errors import NotFoundError
from school_core.sync import CacheStore, ChangeFeed, MutationCoordinator, QueryKey, RealtimeReconciler

_UNSET = object()


# =============================================================================
# FAKE GATEWAY
# =============================================================================

class FakeGateway:
    """
    In-memory stand-in for SupabaseGateway.

    Tables live in dicts keyed by id. Fetches can be held and released one
    by one so tests control the order responses arrive in; writes can be
    held behind a gate to observe the optimistic state.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[Any, dict]] = {}
        self.fetch_calls: List[QueryKey] = []
        self.writes: List[Tuple[str, str, dict]] = []
        self.bulk_calls: List[Tuple[str, List[dict]]] = []

        self.hold_fetches = False
        self.held: List[Tuple[QueryKey, asyncio.Future]] = []
        self.fail_fetch: Dict[QueryKey, Exception] = {}

        self.write_gate: Optional[asyncio.Event] = None
        self.fail_write: Dict[Any, Exception] = {}
        self.fail_bulk: Optional[Exception] = None
        self._rev = 0

    # Table helpers

    def seed(self, entity: str, rows: List[dict]) -> None:
        table = self.tables.setdefault(entity, {})
        for row in rows:
            table[row["id"]] = dict(row)

    def rows(self, entity: str) -> List[dict]:
        return [dict(row) for row in self.tables.get(entity, {}).values()]

    def query(self, key: QueryKey) -> Any:
        spec = get_entity(key.entity)
        rows = [dict(r) for r in self.tables.get(key.entity, {}).values() if key.matches(r)]
        if key.is_detail:
            if not rows:
                raise NotFoundError(f"{key.entity} not found", entity=key.entity)
            return rows[0]
        if spec.order_by:
            rows.sort(key=spec.sort_key, reverse=spec.descending)
        if key.limit is not None:
            rows = rows[: key.limit]
        return rows

    # Reads

    async def fetch_query(self, key: QueryKey) -> Any:
        self.fetch_calls.append(key)
        if self.hold_fetches:
            future = asyncio.get_running_loop().create_future()
            self.held.append((key, future))
            return await future
        if key in self.fail_fetch:
            raise self.fail_fetch[key]
        return self.query(key)

    def release(self, index: int = 0, data: Any = _UNSET, error: Optional[Exception] = None) -> None:
        """Complete a held fetch with table data, explicit data, or an error."""
        key, future = self.held.pop(index)
        if error is not None:
            future.set_exception(error)
        elif data is _UNSET:
            future.set_result(self.query(key))
        else:
            future.set_result(copy.deepcopy(data))

    def fetch_count(self, key: QueryKey) -> int:
        return sum(1 for k in self.fetch_calls if k == key)

    # Writes

    async def write(self, entity: str, operation: str, payload: dict) -> Optional[dict]:
        self.writes.append((entity, operation, dict(payload)))
        if self.write_gate is not None:
            await self.write_gate.wait()
        error = self.fail_write.get(payload.get("id"))
        if error is not None:
            raise error
        return self._apply(entity, operation, payload)

    async def bulk_upsert(self, entity: str, records: List[dict]) -> List[dict]:
        self.bulk_calls.append((entity, [dict(r) for r in records]))
        if self.write_gate is not None:
            await self.write_gate.wait()
        if self.fail_bulk is not None:
            raise self.fail_bulk
        return [self._apply(entity, "update", record) for record in records]

    def _apply(self, entity: str, operation: str, payload: dict) -> dict:
        table = self.tables.setdefault(entity, {})
        record_id = payload["id"]
        if operation == "delete":
            if record_id not in table:
                raise NotFoundError(f"{entity} {record_id} not found", entity=entity)
            return table.pop(record_id)
        self._rev += 1
        row = {**table.get(record_id, {}), **payload, "rev": self._rev}
        table[record_id] = row
        return dict(row)


# =============================================================================
# FAKE CHANGE FEED
# =============================================================================

class FakeChannel:
    def __init__(self, entity, on_change, on_status):
        self.entity = entity
        self.on_change = on_change
        self.on_status = on_status
        self.closed = False


class FakeChangeFeed(ChangeFeed):
    """Change feed driven by the test: push payloads, drop the connection."""

    def __init__(self, auto_subscribe: bool = True):
        self.auto_subscribe = auto_subscribe
        self.opened: List[str] = []
        self.closed: List[str] = []
        self.channels: Dict[str, FakeChannel] = {}
        self.fail_opens = 0

    async def open(self, entity, on_change, on_status):
        self.opened.append(entity)
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise ConnectionError("websocket refused")
        channel = FakeChannel(entity, on_change, on_status)
        self.channels[entity] = channel
        if self.auto_subscribe:
            on_status("SUBSCRIBED", None)
        return channel

    async def close(self, channel):
        channel.closed = True
        self.closed.append(channel.entity)

    def push(self, entity: str, event_type: str, new: Optional[dict] = None, old: Optional[dict] = None):
        """Deliver a postgres_changes payload the way Supabase Realtime does."""
        payload = {
            "data": {
                "schema": "public",
                "table": entity,
                "commit_timestamp": "2024-05-01T08:00:00Z",
                "type": event_type.upper(),
                "record": new or {},
                "old_record": old or {},
                "columns": [],
                "errors": None,
            },
            "ids": [1],
        }
        self.channels[entity].on_change(payload)

    def drop(self, entity: str, status: str = "CHANNEL_ERROR"):
        self.channels[entity].on_status(status, ConnectionError("socket closed"))


# =============================================================================
# SYNC FIXTURES
# =============================================================================

@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store(gateway):
    return CacheStore(fetcher=gateway.fetch_query)


@pytest.fixture
def coordinator(store, gateway):
    return MutationCoordinator(store, gateway)


@pytest.fixture
def feed():
    return FakeChangeFeed()


@pytest_asyncio.fixture
async def reconciler(store, feed):
    reconciler = RealtimeReconciler(store, feed, backoff_base=0.01, backoff_cap=0.04)
    await reconciler.start()
    yield reconciler
    await reconciler.close()


@pytest.fixture
def settle():
    """Let scheduled tasks run to their next suspension point."""
    async def _settle(rounds: int = 5):
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle


@pytest.fixture
def students():
    return [
        {"id": "s1", "full_name": "Ada Lovelace", "class_id": "c1"},
        {"id": "s2", "full_name": "Grace Hopper", "class_id": "c1"},
        {"id": "s3", "full_name": "Alan Turing", "class_id": "c2"},
    ]


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit():
    """Mock Streamlit for testing"""
    import sys

    # Create mock streamlit module
    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.secrets = {}
    mock_st.cache_data = lambda f: f
    mock_st.cache_resource = lambda f: f

    # Store original and replace
    original_st = sys.modules.get('streamlit')
    sys.modules['streamlit'] = mock_st

    yield mock_st

    # Restore original
    if original_st:
        sys.modules['streamlit'] = original_st
    else:
        sys.modules.pop('streamlit', None)


@pytest.fixture
def query_builder():
    """Chainable PostgREST request builder whose ``execute`` is awaitable."""
    builder = MagicMock()
    for method in ("select", "eq", "order", "range", "limit", "insert", "update", "delete", "upsert"):
        getattr(builder, method).return_value = builder
    builder.execute = AsyncMock(return_value=MagicMock(data=[]))
    return builder


@pytest.fixture
def mock_supabase(query_builder):
    """Mock async Supabase client"""
    mock_client = MagicMock()
    mock_client.table.return_value = query_builder
    mock_client.remove_channel = AsyncMock()
    mock_client.remove_all_channels = AsyncMock()
    mock_client.postgrest.aclose = AsyncMock()
    mock_client.auth.sign_in_with_password = AsyncMock()
    mock_client.auth.sign_out = AsyncMock()
    mock_client.auth.get_session = AsyncMock(return_value=None)

    bucket = MagicMock()
    bucket.upload = AsyncMock()
    bucket.remove = AsyncMock(return_value=[])
    bucket.get_public_url = AsyncMock(
        side_effect=lambda path: f"https://demo.supabase.co/storage/v1/object/public/avatars/{path}"
    )
    mock_client.storage.from_.return_value = bucket
    return mock_client
