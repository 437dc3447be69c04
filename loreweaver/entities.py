"""Syncable entity variants and their field-importance tables.

Every variant shares the default importance table; a variant may add entries
for its own fields but never re-rank a default one.
"""

from enum import Enum
from typing import Dict, List, Optional

from loreweaver.types import Importance


class EntityType(str, Enum):
    """Entity collections handled by the sync manager, in sync order."""

    WORLDS = "worlds"
    CHARACTERS = "characters"
    LOCATIONS = "locations"
    FACTIONS = "factions"
    ITEMS = "items"
    LORE_NOTES = "loreNotes"
    MAGIC_SYSTEMS = "magicSystems"
    MYTHOLOGIES = "mythologies"
    TIMELINES = "timelines"


SYNCABLE_ENTITY_TYPES: List[str] = [t.value for t in EntityType]

# Collections that are not world-scoped in local storage
GLOBAL_ENTITY_TYPES = frozenset({EntityType.WORLDS.value})

DEFAULT_FIELD_IMPORTANCE: Dict[str, Importance] = {
    "name": Importance.CRITICAL,
    "title": Importance.CRITICAL,
    "id": Importance.CRITICAL,
    "description": Importance.HIGH,
    "content": Importance.HIGH,
    "type": Importance.HIGH,
    "role": Importance.HIGH,
    "tags": Importance.MEDIUM,
    "categories": Importance.MEDIUM,
    "properties": Importance.MEDIUM,
    "attributes": Importance.MEDIUM,
}

# Per-variant additions. Moving an entity to another world is never auto-merged.
ENTITY_FIELD_IMPORTANCE: Dict[str, Dict[str, Importance]] = {
    EntityType.WORLDS.value: {
        "genre": Importance.HIGH,
    },
    EntityType.CHARACTERS.value: {
        "worldId": Importance.CRITICAL,
        "backstory": Importance.HIGH,
        "appearance": Importance.HIGH,
        "traits": Importance.MEDIUM,
        "relationships": Importance.MEDIUM,
        "factionIds": Importance.MEDIUM,
        "locationIds": Importance.MEDIUM,
    },
    EntityType.LOCATIONS.value: {
        "worldId": Importance.CRITICAL,
        "significance": Importance.HIGH,
        "inhabitants": Importance.MEDIUM,
        "connectedLocations": Importance.MEDIUM,
    },
    EntityType.FACTIONS.value: {
        "worldId": Importance.CRITICAL,
        "ideology": Importance.HIGH,
        "goals": Importance.MEDIUM,
        "leaders": Importance.MEDIUM,
        "memberIds": Importance.MEDIUM,
        "allies": Importance.MEDIUM,
        "enemies": Importance.MEDIUM,
    },
    EntityType.ITEMS.value: {
        "worldId": Importance.CRITICAL,
        "history": Importance.HIGH,
        "powers": Importance.HIGH,
        "currentOwner": Importance.HIGH,
    },
    EntityType.LORE_NOTES.value: {
        "worldId": Importance.CRITICAL,
        "category": Importance.HIGH,
        "linkedEntities": Importance.MEDIUM,
    },
    EntityType.MAGIC_SYSTEMS.value: {
        "worldId": Importance.CRITICAL,
        "source": Importance.HIGH,
        "rules": Importance.HIGH,
        "limitations": Importance.HIGH,
        "history": Importance.HIGH,
        "practitioners": Importance.MEDIUM,
        "schools": Importance.MEDIUM,
        "artifacts": Importance.MEDIUM,
    },
    EntityType.MYTHOLOGIES.value: {
        "worldId": Importance.CRITICAL,
        "origin": Importance.HIGH,
        "deities": Importance.HIGH,
        "history": Importance.HIGH,
        "beliefs": Importance.MEDIUM,
        "rituals": Importance.MEDIUM,
        "followers": Importance.MEDIUM,
        "holyTexts": Importance.MEDIUM,
        "symbols": Importance.MEDIUM,
    },
    EntityType.TIMELINES.value: {
        "worldId": Importance.CRITICAL,
        "events": Importance.HIGH,
    },
}


def field_importance(field: str, entity_type: Optional[str] = None) -> Importance:
    """Importance of a field, consulting the variant table for unknown fields."""
    if field in DEFAULT_FIELD_IMPORTANCE:
        return DEFAULT_FIELD_IMPORTANCE[field]
    if entity_type is not None:
        variant = ENTITY_FIELD_IMPORTANCE.get(entity_type, {})
        if field in variant:
            return variant[field]
    return Importance.LOW


def collection_key(entity_type: str, world_id: Optional[str] = None) -> str:
    """Local storage key of an entity collection."""
    if world_id and entity_type not in GLOBAL_ENTITY_TYPES:
        return f"{entity_type}_{world_id}"
    return entity_type


def validate_entity_type(entity_type: str) -> str:
    """Reject entity types the sync layer does not know about."""
    if entity_type not in SYNCABLE_ENTITY_TYPES:
        raise ValueError(
            f"Unknown entity type {entity_type!r}; expected one of {SYNCABLE_ENTITY_TYPES}"
        )
    return entity_type
