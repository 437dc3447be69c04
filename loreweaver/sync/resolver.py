"""Conflict resolution for sync-wrapped documents.

Pure functions over plain dicts: nothing here touches storage. The resolver
classifies every differing field by importance, decides whether it can be
merged automatically, and produces a ``ConflictResolution`` whose metadata
records every value it overwrote.
"""

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loreweaver.entities import field_importance
from loreweaver.types import (
    SYNC_KEY,
    ConflictResolution,
    ConflictStrategy,
    FieldConflict,
    Importance,
    ResolutionMetadata,
    parse_datetime,
)

logger = logging.getLogger(__name__)

# Dict-valued fields safe to shallow-merge
MERGEABLE_OBJECT_FIELDS = frozenset({"metadata", "properties", "attributes", "stats"})

# String fields whose divergent edits are concatenated
CONCATENABLE_STRING_FIELDS = frozenset({"notes", "description", "content"})

STRING_MERGE_SEPARATOR = "\n\n---\n\n"

CONFIDENCE_PENALTY = 0.7
MIN_CONFIDENCE = 0.1

_ISO_TIMESTAMP = re.compile(
    r"^\d{4}-\d{2}-\d{2}"
    r"([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?"
    r"(Z|[+-]\d{2}:?\d{2})?$"
)


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality that does not conflate booleans with numbers."""
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(deep_equal(x, y) for x, y in zip(a, b))
    return a == b


def is_timestamp(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    return (
        isinstance(value, str)
        and bool(_ISO_TIMESTAMP.match(value.strip()))
        and parse_datetime(value) is not None
    )


def _is_primitive(value: Any) -> bool:
    return not isinstance(value, (dict, list)) and value is not None


def merge_arrays(local: List[Any], remote: List[Any]) -> List[Any]:
    """Union preserving local order, then remote items not already present."""
    merged = list(local)
    for item in remote:
        if item not in merged:
            merged.append(item)
    return merged


def merge_objects(local: Dict[str, Any], remote: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow union; remote wins on colliding keys."""
    return {**local, **remote}


def merge_strings(local: str, remote: str) -> str:
    """Keep the longer string when one contains the other, else join both."""
    if remote in local or local in remote:
        return local if len(local) > len(remote) else remote
    return f"{local}{STRING_MERGE_SEPARATOR}{remote}"


def later_timestamp(local: Any, remote: Any) -> Any:
    """The more recent of two timestamps, returned in its original form."""
    return local if parse_datetime(local) > parse_datetime(remote) else remote


def _comparable_fields(document: Dict[str, Any]) -> List[str]:
    return [k for k in document if k != "id" and not k.startswith(SYNC_KEY)]


class ConflictResolver:
    """Resolve divergent versions of one document.

    Args:
        importance: Maps ``(field, entity_type)`` to an ``Importance``.
    """

    def __init__(
        self,
        importance: Callable[[str, Optional[str]], Importance] = field_importance,
    ):
        self._importance = importance

    def analyze_field_conflicts(
        self,
        local: Dict[str, Any],
        remote: Dict[str, Any],
        base: Optional[Dict[str, Any]] = None,
        entity_type: Optional[str] = None,
    ) -> List[FieldConflict]:
        """One ``FieldConflict`` per field whose values differ.

        Fields missing on one side compare as None. ``id`` and sync metadata
        are never reported.
        """
        fields = _comparable_fields(local)
        fields += [f for f in _comparable_fields(remote) if f not in local]

        conflicts = []
        for name in fields:
            local_value = local.get(name)
            remote_value = remote.get(name)
            if deep_equal(local_value, remote_value):
                continue
            conflicts.append(
                FieldConflict(
                    field=name,
                    local_value=local_value,
                    remote_value=remote_value,
                    can_auto_merge=self.can_auto_merge(name, local_value, remote_value),
                    importance=self._importance(name, entity_type),
                    base_value=base.get(name) if base else None,
                )
            )
        return conflicts

    def can_auto_merge(self, field: str, local_value: Any, remote_value: Any) -> bool:
        if isinstance(local_value, list) and isinstance(remote_value, list):
            return all(_is_primitive(v) for v in local_value) and all(
                _is_primitive(v) for v in remote_value
            )
        if isinstance(local_value, dict) and isinstance(remote_value, dict):
            return field in MERGEABLE_OBJECT_FIELDS
        if is_timestamp(local_value) and is_timestamp(remote_value):
            return True
        if isinstance(local_value, str) and isinstance(remote_value, str):
            return (
                field in CONCATENABLE_STRING_FIELDS
                and local_value.strip() != remote_value.strip()
            )
        return False

    def merge_values(self, field: str, local_value: Any, remote_value: Any) -> Any:
        """Type-specific merge of two auto-mergeable values."""
        if isinstance(local_value, list):
            return merge_arrays(local_value, remote_value)
        if isinstance(local_value, dict):
            return merge_objects(local_value, remote_value)
        if is_timestamp(local_value) and is_timestamp(remote_value):
            return later_timestamp(local_value, remote_value)
        return merge_strings(local_value, remote_value)

    def resolve_conflict(
        self,
        local: Dict[str, Any],
        remote: Dict[str, Any],
        base: Optional[Dict[str, Any]] = None,
        strategy: ConflictStrategy = ConflictStrategy.MERGE,
        entity_type: Optional[str] = None,
    ) -> ConflictResolution:
        strategy = ConflictStrategy(strategy)
        conflicts = self.analyze_field_conflicts(local, remote, base, entity_type)

        if strategy == ConflictStrategy.LOCAL_WINS:
            return self._resolve_side(strategy, local, conflicts, keep_local=True)
        if strategy == ConflictStrategy.REMOTE_WINS:
            return self._resolve_side(strategy, remote, conflicts, keep_local=False)
        if strategy == ConflictStrategy.MANUAL:
            return ConflictResolution(
                strategy=strategy,
                result=dict(local),
                metadata=ResolutionMetadata(requires_manual_review=True, confidence=0.0),
            )
        return self._resolve_merge(local, remote, conflicts)

    def _resolve_side(
        self,
        strategy: ConflictStrategy,
        winner: Dict[str, Any],
        conflicts: List[FieldConflict],
        keep_local: bool,
    ) -> ConflictResolution:
        result = dict(winner)
        discarded = {}
        for c in conflicts:
            losing_value = c.remote_value if keep_local else c.local_value
            if c.field in result:
                if losing_value is not None:
                    discarded[c.field] = losing_value
            else:
                # Fields only the losing side had survive so no key goes missing
                result[c.field] = losing_value
        return ConflictResolution(
            strategy=strategy,
            result=result,
            metadata=ResolutionMetadata(discarded_changes=discarded),
        )

    def _resolve_merge(
        self,
        local: Dict[str, Any],
        remote: Dict[str, Any],
        conflicts: List[FieldConflict],
    ) -> ConflictResolution:
        merged = dict(local)
        for name in _comparable_fields(remote):
            merged.setdefault(name, remote[name])

        meta = ResolutionMetadata()
        confidence = 1.0
        for c in conflicts:
            if not c.can_auto_merge or c.importance == Importance.CRITICAL:
                meta.requires_manual_review = True
                confidence *= CONFIDENCE_PENALTY
                if c.importance == Importance.CRITICAL:
                    merged[c.field] = c.local_value
                    meta.unresolved_fields[c.field] = c.remote_value
                else:
                    merged[c.field] = c.remote_value
                    meta.discarded_changes[c.field] = c.local_value
                continue

            merged[c.field] = self.merge_values(c.field, c.local_value, c.remote_value)
            meta.merged_fields.append(c.field)

        meta.confidence = max(confidence, MIN_CONFIDENCE)
        if meta.requires_manual_review:
            logger.debug(
                f"Merge of {local.get('id')} needs review "
                f"(confidence {meta.confidence:.2f}, unresolved {list(meta.unresolved_fields)})"
            )
        return ConflictResolution(strategy=ConflictStrategy.MERGE, result=merged, metadata=meta)
