# =============================================================================
# school_core/sync/query_key.py
# Query Key - identity of a cached result set
# =============================================================================

from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

# Parameters that shape the page of results rather than filter rows
PAGING_PARAMS = frozenset({"limit"})


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


@dataclass(frozen=True)
class QueryKey:
    """
    (entity-type, serialized-parameters) pair.

    Build keys with ``QueryKey.of`` so equivalent parameter mappings collapse
    to the same cache slot: order does not matter, ``None`` values are
    dropped and values are compared by their JSON form.
    """
    entity: str
    params: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def of(cls, entity: str, params: Optional[Mapping[str, Any]] = None, **kwargs) -> QueryKey:
        merged = dict(params or {})
        merged.update(kwargs)
        items = tuple(
            sorted((name, _canonical(value)) for name, value in merged.items() if value is not None)
        )
        return cls(entity=entity, params=items)

    @classmethod
    def detail(cls, entity: str, record_id: Any) -> QueryKey:
        return cls.of(entity, id=record_id)

    @property
    def param_dict(self) -> dict:
        """Decoded parameters, for handing to the gateway."""
        return {name: json.loads(value) for name, value in self.params}

    @property
    def param_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.params)

    @property
    def filter_names(self) -> Tuple[str, ...]:
        return tuple(name for name in self.param_names if name not in PAGING_PARAMS)

    @property
    def is_detail(self) -> bool:
        """True for single-record keys (params exactly ``{"id": ...}``)."""
        return self.param_names == ("id",)

    @property
    def limit(self) -> Optional[int]:
        return self.param_dict.get("limit")

    def matches(self, record: Mapping[str, Any]) -> bool:
        """True when every filter param equals the record's field of the same name."""
        for name, value in self.params:
            if name in PAGING_PARAMS:
                continue
            if name not in record or _canonical(record[name]) != value:
                return False
        return True

    def __str__(self) -> str:
        if not self.params:
            return self.entity
        args = ", ".join(f"{name}={value}" for name, value in self.params)
        return f"{self.entity}({args})"
