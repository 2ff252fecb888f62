# =============================================================================
# school_core/data/__init__.py
# Remote data access: entity catalogue, gateway, storage
# =============================================================================

from .entities import ENTITIES, EntitySpec, get_entity, affected_keys_predicate

__all__ = [
    "ENTITIES",
    "EntitySpec",
    "get_entity",
    "affected_keys_predicate",
]
