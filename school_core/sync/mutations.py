# =============================================================================
# school_core/sync/mutations.py
# Mutation Coordinator - optimistic writes, commit and rollback
# =============================================================================
"""
MutationCoordinator - every write the pages issue goes through here.

Lifecycle of one mutation:

    PENDING      optimistic rows applied to every affected cache entry,
                 snapshots of those entries kept
    COMMITTED    server rows replaced the optimistic ones, affected queries
                 invalidated
    ROLLED_BACK  snapshots restored exactly, error re-raised to the caller
    PARTIAL      bulk only: confirmed rows kept, failed rows reverted

Writes are never retried automatically.
"""

from __future__ import annotations
import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from school_core.data.entities import affected_keys_predicate, get_entity
from school_core.errors import BulkMutationError
from school_core.logging import LogContext, get_logger
from .cache_store import CacheStore
from .changes import ChangeEvent, ChangeOperation, Record, apply_change, remove_record, upsert_record
from .query_key import QueryKey

logger = get_logger(__name__)


class MutationState(Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    PARTIAL = "partial"


@dataclass
class PendingMutation:
    """Book-keeping for one logical write until it settles."""
    mutation_id: str
    entity: str
    items: List[Tuple[ChangeOperation, Record]]
    target_keys: List[QueryKey]
    snapshots: Dict[QueryKey, Any]
    applied: Dict[QueryKey, Any] = field(default_factory=dict)
    state: MutationState = MutationState.PENDING
    error: Optional[Exception] = None
    invalidated: List[QueryKey] = field(default_factory=list)


@dataclass
class BulkMutationResult:
    """Outcome of a bulk write, reported record by record."""
    entity: str
    succeeded: List[Record] = field(default_factory=list)
    failed: List[Tuple[Record, Exception]] = field(default_factory=list)
    invalidated: List[QueryKey] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)


def _new_id() -> str:
    return str(uuid.uuid4())


class MutationCoordinator:
    """
    Applies optimistic updates and reconciles them with the server.

    Usage:
        coordinator = MutationCoordinator(store, gateway)
        student = await coordinator.mutate("students", "insert", {"full_name": "Ada"})
    """

    def __init__(self, store: CacheStore, gateway):
        self.store = store
        self.gateway = gateway
        self._pending: Dict[str, PendingMutation] = {}
        self._callbacks: List[Callable[[PendingMutation], None]] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def register_callback(self, callback: Callable[[PendingMutation], None]) -> None:
        """Register a callback invoked with each mutation once it settles."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[PendingMutation], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    # =========================================================================
    # SINGLE RECORD
    # =========================================================================

    async def mutate(self, entity: str, operation: Any, payload: Mapping[str, Any]) -> Optional[Record]:
        """
        Optimistically apply and then write one record.

        Args:
            entity: Entity type
            operation: "insert", "update" or "delete" (or ChangeOperation)
            payload: Row values; ``id`` is required for update/delete and
                generated for inserts that lack one

        Returns:
            The server's authoritative row

        Raises:
            SchoolSyncError: the gateway error, after the cache was restored
        """
        op = ChangeOperation.parse(operation)
        item = (op, self._prepare(entity, op, payload))
        pending = self._begin(entity, [item])

        try:
            async with LogContext(logger, f"{op.value} {entity} {item[1]['id']}"):
                server_row = await self.gateway.write(entity, op.value, item[1])
        except BaseException as e:
            self._rollback(pending, e)
            raise

        self._commit(pending, [(item, server_row)])
        return server_row

    async def create(self, entity: str, payload: Mapping[str, Any]) -> Optional[Record]:
        return await self.mutate(entity, ChangeOperation.INSERT, payload)

    async def update(self, entity: str, record_id: Any, changes: Mapping[str, Any]) -> Optional[Record]:
        return await self.mutate(entity, ChangeOperation.UPDATE, {**changes, "id": record_id})

    async def delete(self, entity: str, record_id: Any) -> Optional[Record]:
        return await self.mutate(entity, ChangeOperation.DELETE, {"id": record_id})

    # =========================================================================
    # BULK
    # =========================================================================

    async def bulk_mutate(
        self,
        entity: str,
        operation: Any,
        payloads: Iterable[Mapping[str, Any]],
        batched: bool = True,
    ) -> BulkMutationResult:
        """
        Apply one operation to many records as a single logical unit.

        batched=True issues one ``bulk_upsert`` (insert/update only); the
        platform applies it as one statement, so the unit succeeds or fails
        whole. batched=False issues the writes concurrently; each record is
        atomic on its own, confirmed rows stay committed and only the failed
        ones are reverted.

        Raises:
            BulkMutationError: when some records failed (carries the result)
            SchoolSyncError: when the batched write or every write failed
        """
        op = ChangeOperation.parse(operation)
        items = [(op, self._prepare(entity, op, payload)) for payload in payloads]
        return await self._run_bulk(entity, items, batched)

    async def mark_attendance(
        self,
        class_id: Any,
        date: str,
        marks: Mapping[Any, str],
        batched: bool = True,
    ) -> BulkMutationResult:
        """
        Record attendance for a roster in one unit.

        Existing rows for (class, date) already in the cache keep their ids so
        re-marking a student updates the row instead of inserting a duplicate.

        Args:
            class_id: Class being marked
            date: ISO date (YYYY-MM-DD)
            marks: student_id -> status ("present", "absent", "late", ...)
        """
        existing = self.store.peek(QueryKey.of("attendance", class_id=class_id, date=date))
        known = {row.get("student_id"): row for row in (existing.data or [])} if existing else {}

        items = []
        for student_id, status in marks.items():
            row = known.get(student_id)
            payload = {
                "id": row["id"] if row else _new_id(),
                "student_id": student_id,
                "class_id": class_id,
                "date": date,
                "status": status,
            }
            items.append((ChangeOperation.UPDATE if row else ChangeOperation.INSERT, payload))

        logger.info(f"Marking attendance for {len(items)} students in class {class_id} on {date}")
        return await self._run_bulk("attendance", items, batched)

    async def _run_bulk(
        self,
        entity: str,
        items: List[Tuple[ChangeOperation, Record]],
        batched: bool,
    ) -> BulkMutationResult:
        result = BulkMutationResult(entity=entity)
        if not items:
            return result

        if batched and any(op is ChangeOperation.DELETE for op, _ in items):
            raise ValueError("Batched bulk writes support insert/update only")

        pending = self._begin(entity, items)

        if batched:
            try:
                async with LogContext(logger, f"bulk upsert {len(items)} {entity}"):
                    server_rows = await self.gateway.bulk_upsert(entity, [payload for _, payload in items])
            except BaseException as e:
                self._rollback(pending, e)
                raise
            by_id = {row.get("id"): row for row in server_rows}
            confirmed = [(item, by_id.get(item[1]["id"], item[1])) for item in items]
            self._commit(pending, confirmed)
            result.succeeded = [row for _, row in confirmed]
            result.invalidated = pending.invalidated
            return result

        async with LogContext(logger, f"{len(items)} concurrent writes to {entity}"):
            outcomes = await asyncio.gather(
                *(self.gateway.write(entity, op.value, payload) for op, payload in items),
                return_exceptions=True,
            )

        confirmed = []
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                self._rollback(pending, outcome)
                raise outcome
            if isinstance(outcome, Exception):
                result.failed.append((item[1], outcome))
            else:
                confirmed.append((item, outcome))
                result.succeeded.append(outcome)

        if not confirmed:
            first_error = result.failed[0][1]
            self._rollback(pending, first_error)
            raise first_error

        if result.failed:
            self._settle_partial(pending, confirmed, result.failed)
        else:
            self._commit(pending, confirmed)
        result.invalidated = pending.invalidated

        if result.failed:
            raise BulkMutationError(
                f"{len(result.failed)} of {len(items)} {entity} writes failed",
                result,
            )
        return result

    # =========================================================================
    # LIFECYCLE STEPS
    # =========================================================================

    def _prepare(self, entity: str, op: ChangeOperation, payload: Mapping[str, Any]) -> Record:
        get_entity(entity)
        record = dict(payload)
        if op is ChangeOperation.INSERT:
            record.setdefault("id", _new_id())
        elif "id" not in record:
            raise ValueError(f"{op.value} of {entity} requires an 'id'")
        return record

    def _known_row(self, entity: str, record_id: Any) -> Optional[Record]:
        """Latest cached copy of a row, from any entry of the entity."""
        for key in self.store.keys(lambda k: k.entity == entity):
            entry = self.store.peek(key)
            data = entry.data if entry else None
            rows = [data] if isinstance(data, dict) else (data or [])
            for row in rows:
                if row.get("id") == record_id:
                    return row
        return None

    def _begin(self, entity: str, items: List[Tuple[ChangeOperation, Record]]) -> PendingMutation:
        spec = get_entity(entity)
        predicted: List[Tuple[ChangeOperation, Record]] = []
        touched: List[Record] = []

        for op, payload in items:
            prior = self._known_row(entity, payload["id"])
            if prior:
                touched.append(prior)
            record = {**(prior or {}), **payload} if op is ChangeOperation.UPDATE else payload
            predicted.append((op, record))
            touched.append(record)

        targets = self.store.keys(affected_keys_predicate(entity, touched))
        snapshots = {key: self.store.snapshot(key) for key in targets}

        for key in targets:
            self.store.patch(key, lambda data, key=key: self._fold(data, key, spec, entity, predicted))

        pending = PendingMutation(
            mutation_id=_new_id(),
            entity=entity,
            items=items,
            target_keys=targets,
            snapshots=snapshots,
            applied={key: self.store.snapshot(key) for key in targets},
        )
        self._pending[pending.mutation_id] = pending
        return pending

    @staticmethod
    def _fold(data, key, spec, entity, rows: List[Tuple[ChangeOperation, Record]]):
        for op, record in rows:
            event = ChangeEvent(
                entity=entity,
                operation=op,
                record_id=record["id"],
                record=None if op is ChangeOperation.DELETE else record,
            )
            data = apply_change(data, event, key, spec)
        return data

    def _commit(self, pending: PendingMutation, confirmed) -> None:
        spec = get_entity(pending.entity)
        server_rows = [
            (op, server_row if server_row is not None else payload)
            for (op, payload), server_row in confirmed
        ]
        for key in pending.target_keys:
            self.store.patch(key, lambda data, key=key: self._fold(data, key, spec, pending.entity, server_rows))

        pending.state = MutationState.COMMITTED
        self._invalidate(pending, [row for _, row in server_rows])
        self._finish(pending)

    def _rollback(self, pending: PendingMutation, error: BaseException) -> None:
        """
        Undo this mutation's optimistic rows.

        An entry nothing else touched since the optimistic patch gets its
        snapshot back verbatim. Where another mutation or a pushed change
        landed in between, only this mutation's rows are reverted so the
        other changes survive. Either way the keys are invalidated.
        """
        spec = get_entity(pending.entity)
        record_ids = [payload["id"] for _, payload in pending.items]

        for key, snapshot in pending.snapshots.items():
            if self.store.snapshot(key) == pending.applied.get(key):
                self.store.restore(key, snapshot)
                continue

            def revert(data, key=key, snapshot=snapshot):
                for record_id in record_ids:
                    data = self._revert_row(data, key, spec, snapshot, record_id)
                return data

            self.store.patch(key, revert)

        pending.state = MutationState.ROLLED_BACK
        pending.error = error if isinstance(error, Exception) else None
        logger.warning(f"Rolled back {pending.entity} mutation {pending.mutation_id}: {error}")
        targets = set(pending.target_keys)
        pending.invalidated = self.store.invalidate(lambda key: key in targets)
        self._finish(pending)

    def _settle_partial(self, pending: PendingMutation, confirmed, failed) -> None:
        spec = get_entity(pending.entity)
        failed_ids = [payload["id"] for payload, _ in failed]
        server_rows = [
            (op, server_row if server_row is not None else payload)
            for (op, payload), server_row in confirmed
        ]

        for key in pending.target_keys:
            snapshot = pending.snapshots.get(key)

            def revert(data, key=key, snapshot=snapshot):
                for record_id in failed_ids:
                    data = self._revert_row(data, key, spec, snapshot, record_id)
                return self._fold(data, key, spec, pending.entity, server_rows)

            self.store.patch(key, revert)

        pending.state = MutationState.PARTIAL
        pending.error = failed[0][1]
        logger.warning(
            f"{pending.entity} bulk mutation {pending.mutation_id}: "
            f"{len(confirmed)} committed, {len(failed)} reverted"
        )
        self._invalidate(pending, [row for _, row in server_rows] + [payload for payload, _ in failed])
        self._finish(pending)

    @staticmethod
    def _revert_row(data, key: QueryKey, spec, snapshot, record_id):
        if key.is_detail:
            return snapshot if key.param_dict.get("id") == record_id else data
        prior = next((row for row in (snapshot or []) if row.get("id") == record_id), None)
        rows = list(data or [])
        if prior is None:
            return remove_record(rows, record_id)
        return upsert_record(rows, prior, spec, key)

    def _invalidate(self, pending: PendingMutation, rows: List[Record]) -> None:
        touched = list(rows)
        for snapshot in pending.snapshots.values():
            ids = {row.get("id") for row in rows}
            prior_rows = [snapshot] if isinstance(snapshot, dict) else (snapshot or [])
            touched.extend(row for row in prior_rows if row.get("id") in ids)
        pending.invalidated = self.store.invalidate(affected_keys_predicate(pending.entity, touched))

    def _finish(self, pending: PendingMutation) -> None:
        self._pending.pop(pending.mutation_id, None)
        for callback in list(self._callbacks):
            try:
                callback(pending)
            except Exception as e:
                logger.error(f"Error in mutation callback: {e}")
