# =============================================================================
# school_core/data/gateway.py
# Remote Data Gateway - typed async wrapper around Supabase table calls
# =============================================================================
"""
SupabaseGateway - one read path and one write path per entity type.

Every call goes through ``_execute`` which attaches the current credential
and turns client exceptions into the SchoolHub taxonomy:

    httpx transport errors, timeouts, 5xx      -> NetworkError (retryable)
    42501, 401/403, PGRST301/PGRST302         -> AuthorizationError
    PGRST116, empty result for a single row   -> NotFoundError
    23xxx / 22xxx constraint and data errors  -> ValidationError

Writes are never retried here; the error reaches the caller unchanged.
"""

from __future__ import annotations
import logging
import re
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError

from school_core.config import SyncSettings
from school_core.errors import (
    AuthorizationError,
    NetworkError,
    NotFoundError,
    SchoolSyncError,
    ValidationError,
)
from school_core.logging import LogContext, get_logger
from .entities import get_entity

if TYPE_CHECKING:
    from school_core.sync.query_key import QueryKey

logger = get_logger(__name__)

Record = Dict[str, Any]

AUTH_CODES = {"42501", "PGRST301", "PGRST302", "401", "403"}
NOT_FOUND_CODES = {"PGRST116", "404"}

_FIELD_FROM_KEY = re.compile(r"Key \((?P<field>[^)]+)\)")
_FIELD_FROM_COLUMN = re.compile(r'column "(?P<field>[^"]+)"')
_CONSTRAINT = re.compile(r'constraint "(?P<constraint>[^"]+)"')


def classify_api_error(error: APIError, entity: str, operation: str) -> SchoolSyncError:
    """Map a PostgREST error onto the SchoolHub taxonomy."""
    code = str(error.code or "")
    message = error.message or str(error)
    details = error.details or ""

    if code in AUTH_CODES:
        return AuthorizationError(message, entity=entity, operation=operation)
    if code in NOT_FOUND_CODES:
        return NotFoundError(message, entity=entity)
    if code.startswith("23") or code.startswith("22"):
        field_match = _FIELD_FROM_KEY.search(details) or _FIELD_FROM_COLUMN.search(message)
        constraint_match = _CONSTRAINT.search(message)
        return ValidationError(
            message,
            field=field_match.group("field") if field_match else None,
            constraint=constraint_match.group("constraint") if constraint_match else None,
            details={"entity": entity, "pg_code": code},
        )
    if code.startswith("5") or code.startswith("08"):
        return NetworkError(message, entity=entity)
    # Anything else PostgREST rejects is a bad request from our side
    return ValidationError(message, details={"entity": entity, "pg_code": code or None})


class SupabaseGateway:
    """
    Async gateway for the hosted tables.

    Usage:
        gateway = SupabaseGateway(client, settings)
        students = await gateway.list("students", {"class_id": class_id})
        student = await gateway.create("students", {"full_name": "Ada"})
    """

    def __init__(
        self,
        client,
        settings: Optional[SyncSettings] = None,
        credentials: Optional[Callable[[], Optional[str]]] = None,
    ):
        """
        Args:
            client: Supabase ``AsyncClient``
            settings: Sync settings (page size)
            credentials: Returns the current access token, or None for anon
        """
        self.client = client
        self.page_size = settings.page_size if settings else 1000
        self._anon_key = settings.supabase_key if settings else None
        self._credentials = credentials

    # =========================================================================
    # CALL PLUMBING
    # =========================================================================

    def _authorize(self) -> None:
        """Attach the user's access token, or the anon key once nobody is signed in."""
        if self._credentials is None:
            return
        token = self._credentials() or self._anon_key
        if token:
            self.client.postgrest.auth(token)

    async def _execute(self, entity: str, operation: str, builder) -> List[Record]:
        self._authorize()
        try:
            response = await builder.execute()
        except APIError as e:
            raise classify_api_error(e, entity, operation) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthorizationError(str(e), entity=entity, operation=operation) from e
            if status == 404:
                raise NotFoundError(str(e), entity=entity) from e
            raise NetworkError(str(e), entity=entity, status_code=status) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{operation} {entity} failed: {e}", entity=entity) from e
        return list(response.data or [])

    def _table(self, entity: str):
        return self.client.table(get_entity(entity).table)

    # =========================================================================
    # READS
    # =========================================================================

    async def list(
        self,
        entity: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """
        Fetch every matching row, paging past the 1000-row cap.

        Args:
            entity: Entity type
            filters: Equality filters (column -> value)
            limit: Stop after this many rows
        """
        spec = get_entity(entity)
        rows: List[Record] = []
        offset = 0

        async with LogContext(logger, f"Listing {entity} {filters or ''}".strip(), level=logging.DEBUG):
            while True:
                batch_size = self.page_size if limit is None else min(self.page_size, limit - len(rows))
                query = self._table(entity).select("*")
                for column, value in (filters or {}).items():
                    query = query.eq(column, value)
                if spec.order_by:
                    query = query.order(spec.order_by, desc=spec.descending)
                query = query.range(offset, offset + batch_size - 1)

                batch = await self._execute(entity, "list", query)
                rows.extend(batch)

                if len(batch) < batch_size or (limit is not None and len(rows) >= limit):
                    break
                offset += batch_size

        return rows

    async def get(self, entity: str, record_id: Any) -> Record:
        """Fetch one row by id; raises NotFoundError when it is missing."""
        query = self._table(entity).select("*").eq("id", record_id).limit(1)
        rows = await self._execute(entity, "get", query)
        if not rows:
            raise NotFoundError(f"{entity} {record_id} not found", entity=entity, record_id=record_id)
        return rows[0]

    async def fetch_query(self, key: "QueryKey") -> Any:
        """Resolve a cache key to its data (the CacheStore's default fetcher)."""
        if key.is_detail:
            return await self.get(key.entity, key.param_dict["id"])
        params = key.param_dict
        limit = params.pop("limit", None)
        return await self.list(key.entity, params, limit=limit)

    # Filtered queries used by the pages

    async def students_by_class(self, class_id: Any) -> List[Record]:
        return await self.list("students", {"class_id": class_id})

    async def attendance_by_date(self, date: str) -> List[Record]:
        return await self.list("attendance", {"date": date})

    async def attendance_for_class_on(self, class_id: Any, date: str) -> List[Record]:
        return await self.list("attendance", {"class_id": class_id, "date": date})

    async def timetable_for_class(self, class_id: Any, day_of_week: Optional[int] = None) -> List[Record]:
        filters: Dict[str, Any] = {"class_id": class_id}
        if day_of_week is not None:
            filters["day_of_week"] = day_of_week
        return await self.list("timetable", filters)

    async def recent_announcements(self, limit: int = 20) -> List[Record]:
        return await self.list("announcements", limit=limit)

    # =========================================================================
    # WRITES
    # =========================================================================

    async def create(self, entity: str, payload: Record) -> Record:
        rows = await self._execute(entity, "create", self._table(entity).insert(payload))
        if not rows:
            # Insert allowed but the row is not readable back under RLS
            raise AuthorizationError(f"Created {entity} is not visible", entity=entity, operation="create")
        return rows[0]

    async def update(self, entity: str, record_id: Any, changes: Record) -> Record:
        changes = {k: v for k, v in changes.items() if k != "id"}
        query = self._table(entity).update(changes).eq("id", record_id)
        rows = await self._execute(entity, "update", query)
        if not rows:
            raise NotFoundError(f"{entity} {record_id} not found", entity=entity, record_id=record_id)
        return rows[0]

    async def delete(self, entity: str, record_id: Any) -> Record:
        query = self._table(entity).delete().eq("id", record_id)
        rows = await self._execute(entity, "delete", query)
        if not rows:
            raise NotFoundError(f"{entity} {record_id} not found", entity=entity, record_id=record_id)
        return rows[0]

    async def bulk_upsert(self, entity: str, records: List[Record]) -> List[Record]:
        """Single batched write; the platform applies it as one statement."""
        if not records:
            return []
        return await self._execute(entity, "bulk_upsert", self._table(entity).upsert(records))

    async def write(self, entity: str, operation: str, payload: Record) -> Optional[Record]:
        """Dispatch a single-row mutation by operation name."""
        if operation == "insert":
            return await self.create(entity, payload)
        if operation == "update":
            return await self.update(entity, payload["id"], payload)
        if operation == "delete":
            return await self.delete(entity, payload["id"])
        raise ValueError(f"Unknown write operation '{operation}'")
