# =============================================================================
# school_core/data/entities.py
# Static catalogue of entity types, their tables and query shapes
# =============================================================================
"""
Every entity type the front end manages is declared here once.

``shapes`` lists the parameter-name combinations the pages query with. A
mutated or pushed record affects a cached Query Key when the key's parameter
names form one of these shapes and the record carries the same values. The
table is static on purpose: nothing is inferred from the data.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from school_core.errors import ConfigurationError

Record = Dict[str, Any]


@dataclass(frozen=True)
class EntitySpec:
    """Description of one entity collection."""
    name: str
    table: str
    order_by: Optional[str] = None
    descending: bool = False
    shapes: Tuple[Tuple[str, ...], ...] = ((), ("id",))

    def sort_key(self, record: Mapping[str, Any]):
        """Comparator key; missing values sort first (last when descending)."""
        value = record.get(self.order_by) if self.order_by else None
        return (value is not None, value if value is not None else "")

    @property
    def has_comparator(self) -> bool:
        return self.order_by is not None

    def shape_names(self) -> List[frozenset]:
        return [frozenset(shape) for shape in self.shapes]


ENTITIES: Dict[str, EntitySpec] = {
    "students": EntitySpec(
        name="students",
        table="students",
        order_by="full_name",
        shapes=((), ("id",), ("class_id",)),
    ),
    "teachers": EntitySpec(
        name="teachers",
        table="teachers",
        order_by="full_name",
        shapes=((), ("id",), ("subject",)),
    ),
    "classes": EntitySpec(
        name="classes",
        table="classes",
        order_by="name",
        shapes=((), ("id",), ("teacher_id",)),
    ),
    "attendance": EntitySpec(
        name="attendance",
        table="attendance",
        order_by="student_id",
        shapes=(
            (),
            ("id",),
            ("class_id",),
            ("date",),
            ("class_id", "date"),
            ("student_id",),
        ),
    ),
    "timetable": EntitySpec(
        name="timetable",
        table="timetable",
        order_by="start_time",
        shapes=((), ("id",), ("class_id",), ("teacher_id",), ("class_id", "day_of_week")),
    ),
    "announcements": EntitySpec(
        name="announcements",
        table="announcements",
        order_by="created_at",
        descending=True,
        shapes=((), ("id",), ("class_id",)),
    ),
}


def get_entity(name: str) -> EntitySpec:
    """Look up an entity spec, failing loudly on unknown names."""
    try:
        return ENTITIES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown entity type '{name}'",
            config_key="entity",
            expected_type=", ".join(sorted(ENTITIES)),
        ) from None


def affected_keys_predicate(entity: str, records: Iterable[Mapping[str, Any]]) -> Callable[[Any], bool]:
    """
    Build a predicate selecting every Query Key a set of records can affect.

    Args:
        entity: Entity type of the records
        records: The mutated records (both the prior and the new version of
            an updated row should be passed, so keys the row leaves are hit too)

    Returns:
        Callable taking a QueryKey and returning True when it must be invalidated
    """
    spec = get_entity(entity)
    shapes = spec.shape_names()
    rows = [dict(r) for r in records if r]

    def predicate(key) -> bool:
        if key.entity != entity:
            return False
        names = frozenset(key.filter_names)
        if names not in shapes:
            # Ad hoc filters outside the table are refreshed wholesale
            return True
        if not names:
            return True
        return any(key.matches(row) for row in rows)

    return predicate
