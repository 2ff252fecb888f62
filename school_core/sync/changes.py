# =============================================================================
# school_core/sync/changes.py
# Change events and the record-merge rules shared by realtime and mutations
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from school_core.data.entities import EntitySpec
from school_core.logging import get_logger

logger = get_logger(__name__)

Record = Dict[str, Any]


class ChangeOperation(Enum):
    """Row-level operation carried by a change event or a mutation."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> ChangeOperation:
        if isinstance(value, ChangeOperation):
            return value
        return cls(str(getattr(value, "value", value)).lower())


@dataclass(frozen=True)
class ChangeEvent:
    """A single pushed row change. Applied once, then discarded."""
    entity: str
    operation: ChangeOperation
    record_id: Any
    record: Optional[Record] = None
    old_record: Optional[Record] = field(default=None, compare=False)

    @classmethod
    def from_payload(cls, entity: str, payload: Mapping[str, Any]) -> Optional[ChangeEvent]:
        """
        Build an event from a Supabase realtime postgres_changes payload.

        Accepts both the realtime v2 shape ``{"data": {"type", "record",
        "old_record"}}`` and the flat ``{"eventType", "new", "old"}`` shape.
        Returns None for payloads that carry no row identity.
        """
        body = payload.get("data", payload)
        kind = body.get("type") or body.get("eventType")
        if kind is None:
            return None
        try:
            operation = ChangeOperation.parse(kind)
        except ValueError:
            logger.debug(f"Ignoring realtime payload of type {kind!r}")
            return None

        new = body.get("record") or body.get("new") or None
        old = body.get("old_record") or body.get("old") or None
        source = new if operation is not ChangeOperation.DELETE else (old or new)
        if not source or "id" not in source:
            return None

        return cls(
            entity=entity,
            operation=operation,
            record_id=source["id"],
            record=dict(new) if new and operation is not ChangeOperation.DELETE else None,
            old_record=dict(old) if old else None,
        )


def _precedes(spec: EntitySpec, a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    if spec.descending:
        return spec.sort_key(a) > spec.sort_key(b)
    return spec.sort_key(a) < spec.sort_key(b)


def upsert_record(
    rows: List[Record],
    record: Record,
    spec: Optional[EntitySpec] = None,
    key=None,
) -> List[Record]:
    """
    Return ``rows`` with ``record`` present exactly once.

    Existing rows with the same id are replaced. With a comparator the row
    goes to its ordered position (after equal keys), otherwise it keeps the
    old position or is appended. Rows that no longer match ``key``'s filters
    are dropped instead.
    """
    record_id = record.get("id")
    position = next((i for i, row in enumerate(rows) if row.get("id") == record_id), None)
    remaining = [row for row in rows if row.get("id") != record_id]

    if key is not None and not key.matches(record):
        return remaining

    if spec is not None and spec.has_comparator:
        index = len(remaining)
        try:
            for i, row in enumerate(remaining):
                if _precedes(spec, record, row):
                    index = i
                    break
        except TypeError:
            # Mixed value types in the sort column
            index = len(remaining)
        remaining.insert(index, record)
    elif position is not None:
        remaining.insert(min(position, len(remaining)), record)
    else:
        remaining.append(record)

    limit = key.limit if key is not None else None
    if limit is not None and len(remaining) > limit:
        remaining = remaining[:limit]
    return remaining


def remove_record(rows: List[Record], record_id: Any) -> List[Record]:
    """Return ``rows`` without any occurrence of ``record_id``."""
    return [row for row in rows if row.get("id") != record_id]


def apply_change(data: Any, event: ChangeEvent, key, spec: Optional[EntitySpec] = None) -> Any:
    """
    Fold one change into cached data for ``key``.

    Collections get upsert/remove semantics; detail entries (a single record
    keyed by id) are replaced or cleared.
    """
    if key.is_detail:
        if key.param_dict.get("id") != event.record_id:
            return data
        if event.operation is ChangeOperation.DELETE:
            return None
        return dict(event.record) if event.record is not None else data

    rows = list(data) if data else []
    if event.operation is ChangeOperation.DELETE:
        return remove_record(rows, event.record_id)
    if event.record is None:
        return rows
    return upsert_record(rows, dict(event.record), spec, key)
