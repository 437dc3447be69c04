"""
Shared sync types for loreweaver.

All sync dataclasses, enums and exceptions live here. These are the shared
vocabulary between the local store, the remote store, the conflict resolver
and the sync manager.

Documents are plain dicts so they stay JSON-serializable end to end; sync
metadata rides along under the reserved ``_sync`` key.
"""

import random
import string
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

SYNC_KEY = "_sync"

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def epoch_ms() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string (or pass a datetime through).

    Returns None for anything that is not a timestamp. Naive values are
    treated as UTC so they can be compared with aware ones.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def random_suffix(length: int = 9) -> str:
    """Random lowercase base36 suffix used in ids and change vectors."""
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


def strip_sync(document: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of a document without its sync metadata."""
    return {k: v for k, v in document.items() if not k.startswith(SYNC_KEY)}


# === Enums ===


class Importance(str, Enum):
    """How much a field matters when two versions disagree."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConflictStrategy(str, Enum):
    """Strategies understood by the conflict resolver."""

    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    MERGE = "merge"
    MANUAL = "manual"


class ConflictPolicy(str, Enum):
    """Global policy the sync manager applies to detected conflicts."""

    ASK = "ask"
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    AUTO_MERGE = "auto-merge"


class OperationType(str, Enum):
    """Kinds of queued local mutations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RemoteConflictType(str, Enum):
    """Classification produced by ``RemoteStore.detect_conflicts``."""

    VERSION = "version"  # version numbers differ
    CONCURRENT = "concurrent"  # same version, different change vector
    DELETED = "deleted"  # remote document no longer exists


# === Exceptions ===


class SyncError(Exception):
    """Base class for sync layer errors."""


class ConnectivityError(SyncError):
    """Raised before any remote call when the connectivity probe fails."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "Network connection required for sync operations. "
            "Please check your internet connection."
        )


class AuthenticationError(SyncError):
    """Raised when a remote operation needs a user and none is signed in."""


class DocumentNotFoundError(SyncError):
    """Raised when updating a remote document that does not exist."""

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"Document {collection}/{record_id} does not exist")


class VersionConflictError(SyncError):
    """Raised when a document's version doesn't match the expected version.

    This indicates a concurrent modification - another writer updated the
    document between when we read it and when we tried to commit our changes.
    Callers should re-fetch, re-resolve and re-submit.
    """

    def __init__(self, collection: str, record_id: str, expected_version: int, actual_version: int):
        self.collection = collection
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {collection}/{record_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


class RetryExhaustedError(SyncError):
    """Raised when a transient failure outlives the retry budget."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")


# === Sync Metadata ===


@dataclass
class SyncMetadata:
    """Per-document sync metadata stored under ``_sync``."""

    last_modified: str
    modified_by: str
    version: int
    device_id: str
    change_vector: str
    conflict_resolved: Optional[bool] = None

    @staticmethod
    def new_change_vector(device_id: str) -> str:
        return f"{device_id}_{epoch_ms()}_{random_suffix()}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["conflict_resolved"] is None:
            del data["conflict_resolved"]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncMetadata":
        return cls(
            last_modified=data.get("last_modified") or utc_now(),
            modified_by=data.get("modified_by") or "anonymous",
            version=int(data.get("version") or 1),
            device_id=data.get("device_id") or "unknown",
            change_vector=data.get("change_vector") or "",
            conflict_resolved=data.get("conflict_resolved"),
        )

    @classmethod
    def of(cls, document: Dict[str, Any]) -> Optional["SyncMetadata"]:
        """Read the metadata of a wrapped document, if it has any."""
        meta = document.get(SYNC_KEY)
        if not isinstance(meta, dict):
            return None
        return cls.from_dict(meta)


# === Conflict Resolution Types ===


@dataclass
class FieldConflict:
    """One field on which two versions of a document disagree."""

    field: str
    local_value: Any
    remote_value: Any
    can_auto_merge: bool
    importance: Importance
    base_value: Any = None


@dataclass
class ResolutionMetadata:
    """What happened while resolving one document."""

    merged_fields: List[str] = field(default_factory=list)
    discarded_changes: Dict[str, Any] = field(default_factory=dict)
    requires_manual_review: bool = False
    confidence: float = 1.0
    # Remote values of critical fields a merge kept at the local value
    unresolved_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConflictResolution:
    """Result of resolving one document's conflicts."""

    strategy: ConflictStrategy
    result: Dict[str, Any]
    metadata: ResolutionMetadata = field(default_factory=ResolutionMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "result": self.result,
            "metadata": asdict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictResolution":
        return cls(
            strategy=ConflictStrategy(data["strategy"]),
            result=data["result"],
            metadata=ResolutionMetadata(**data.get("metadata", {})),
        )


@dataclass
class SyncConflict:
    """A detected local/remote divergence awaiting (or holding) a resolution."""

    id: str
    entity_type: str
    local: Dict[str, Any]
    remote: Dict[str, Any]
    resolution: Optional[ConflictResolution] = None
    detected_at: str = field(default_factory=utc_now)

    @staticmethod
    def make_id(entity_type: str, record_id: str) -> str:
        return f"{entity_type}:{record_id}"

    @property
    def record_id(self) -> str:
        return self.local.get("id") or self.remote.get("id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "local": self.local,
            "remote": self.remote,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "detected_at": self.detected_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConflict":
        resolution = data.get("resolution")
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            local=data["local"],
            remote=data["remote"],
            resolution=ConflictResolution.from_dict(resolution) if resolution else None,
            detected_at=data.get("detected_at") or utc_now(),
        )


@dataclass
class RemoteConflict:
    """Conflict classification returned by the remote store."""

    local: Dict[str, Any]
    remote: Optional[Dict[str, Any]]
    conflict_type: RemoteConflictType


# === Queue and Status Types ===


@dataclass
class PendingOperation:
    """One queued local mutation waiting to reach the remote store."""

    operation_id: str
    operation: OperationType
    entity_type: str
    payload: Dict[str, Any]
    queued_at: str
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None

    @property
    def record_id(self) -> str:
        return str(self.payload.get("id"))


@dataclass
class SyncStatus:
    """Process-wide sync status published to listeners."""

    is_online: bool = True
    is_syncing: bool = False
    last_sync_time: Optional[str] = None
    pending_changes: int = 0
    conflicts_count: int = 0
    sync_enabled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncReport:
    """Result of a sync pass."""

    pushed: int = 0  # Documents created or updated remotely
    pulled: int = 0  # Documents written locally from remote
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    operations_processed: int = 0
    operations_failed: int = 0
    errors: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.errors and self.skipped_reason is None


@dataclass
class MigrationStatus:
    """Whether local and remote already hold data, for first-time sync."""

    has_local_data: bool
    has_remote_data: bool
    last_sync_time: Optional[str] = None


# === Settings ===


class SyncSettings(BaseModel):
    """User-facing sync settings, persisted as JSON in the local store."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = False
    auto_sync: bool = Field(default=True, alias="autoSync")
    sync_interval: int = Field(default=5, ge=1, alias="syncInterval")  # minutes
    conflict_resolution: ConflictPolicy = Field(
        default=ConflictPolicy.ASK, alias="conflictResolution"
    )
    max_offline_changes: int = Field(default=100, ge=0, alias="maxOfflineChanges")
    compress_sync: bool = Field(default=True, alias="compressSync")
