"""
Domain models for the sync engine.

- Record: typed view of a row, with a flat JSON form used inside snapshots
- EncryptionKey: key metadata (never the key bytes)
- SyncSnapshot: checksummed point-in-time export of sync-enabled tables
- SyncConflict / ConflictResolution: divergent records and their outcome
- SyncMetadata: per-table sync cursors
- BackupDescriptor: a remote blob, as seen by retention and restore
- SyncProgress / SyncResult: what the engine reports back to callers
"""

import enum
import hashlib
import hmac
import uuid
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from clinicsync.sync.clock import ensure_utc, parse_iso, to_epoch_ms, utc_now
from clinicsync.sync.errors import (
    IntegrityError, IntegrityErrorKind, OperationErrorKind, SyncError,
)
from clinicsync.sync.serialization import canonical_json

SNAPSHOT_VERSION = 1

# JSON-compatible field value
Value = Union[str, int, float, bool, None, list, dict]

RESERVED_FIELDS = ("id", "last_modified", "sync_status", "origin_id")
BOOKKEEPING_FIELDS = frozenset({"sync_status", "origin_id", "created_at", "updated_at"})


def _gen_id() -> str:
    return uuid.uuid4().hex


class RecordStatus(str, enum.Enum):
    pending = "pending"
    synced = "synced"


class ResolutionStrategy(str, enum.Enum):
    use_local = "use_local"
    use_remote = "use_remote"
    merge = "merge"
    manual = "manual"
    last_write_wins = "last_write_wins"


class ConflictKind(str, enum.Enum):
    update_update = "update_update"


class BackupKind(str, enum.Enum):
    backup = "backup"
    sync = "sync"


class SyncOperation(str, enum.Enum):
    sync = "sync"
    full_sync = "full_sync"
    backup = "backup"
    restore = "restore"
    reconcile = "reconcile"
    resolve = "resolve"
    cleanup = "cleanup"


class EngineStatus(str, enum.Enum):
    idle = "idle"
    syncing = "syncing"
    backing_up = "backing_up"
    restoring = "restoring"
    cleaning = "cleaning"
    error = "error"


class ResultStatus(str, enum.Enum):
    success = "success"
    failure = "failure"
    partial = "partial"
    cancelled = "cancelled"


# ── Records ─────────────────────────────────────────────────────────────

class Record(BaseModel):
    id: str
    fields: dict[str, Value] = Field(default_factory=dict)
    last_modified: int = 0
    sync_status: RecordStatus = RecordStatus.pending
    origin_id: Optional[str] = None

    def to_flat(self) -> dict[str, Any]:
        flat: dict[str, Any] = {"id": self.id}
        flat.update(self.fields)
        flat["last_modified"] = self.last_modified
        flat["sync_status"] = self.sync_status.value
        if self.origin_id is not None:
            flat["origin_id"] = self.origin_id
        return flat

    @classmethod
    def from_flat(
        cls,
        data: dict[str, Any],
        default_status: RecordStatus = RecordStatus.pending,
    ) -> "Record":
        if not isinstance(data, dict) or data.get("id") in (None, ""):
            raise IntegrityError(
                IntegrityErrorKind.corrupted_data, "Record without an id", {"record": data}
            )
        try:
            status = RecordStatus(data.get("sync_status", default_status))
        except ValueError:
            status = default_status
        return cls(
            id=str(data["id"]),
            fields={k: v for k, v in data.items() if k not in RESERVED_FIELDS},
            last_modified=to_epoch_ms(data.get("last_modified")) or 0,
            sync_status=status,
            origin_id=data.get("origin_id"),
        )

    def content(self) -> dict[str, Value]:
        """Fields that matter when comparing two versions of a record."""
        return {k: v for k, v in self.fields.items() if k not in BOOKKEEPING_FIELDS}

    def same_content(self, other: "Record") -> bool:
        return self.content() == other.content()


# ── Keys ────────────────────────────────────────────────────────────────

class EncryptionKey(BaseModel):
    key_id: str
    tenant_id: str
    derivation_method: str = "PBKDF2-SHA256"
    salt: str                       # base64
    iterations: int
    created_at: datetime
    expires_at: datetime
    is_active: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())


# ── Snapshots ───────────────────────────────────────────────────────────

class SyncSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    origin_id: str
    timestamp: datetime
    version: int = SNAPSHOT_VERSION
    tables: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    checksum: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        tenant_id: str,
        origin_id: str,
        tables: dict[str, list[dict[str, Any]]],
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> "SyncSnapshot":
        timestamp = ensure_utc(timestamp or utc_now())
        metadata = dict(metadata or {})
        checksum = cls.compute_checksum({
            "tenant_id": tenant_id,
            "origin_id": origin_id,
            "timestamp": timestamp.isoformat(),
            "version": SNAPSHOT_VERSION,
            "tables": tables,
            "metadata": metadata,
        })
        return cls(
            tenant_id=tenant_id,
            origin_id=origin_id,
            timestamp=timestamp,
            version=SNAPSHOT_VERSION,
            tables=tables,
            checksum=checksum,
            metadata=metadata,
        )

    @staticmethod
    def compute_checksum(payload: dict[str, Any]) -> str:
        return hashlib.sha256(canonical_json(payload)).hexdigest()

    def checksum_payload(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "origin_id": self.origin_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "tables": self.tables,
            "metadata": self.metadata,
        }

    def validate_integrity(self) -> bool:
        expected = self.compute_checksum(self.checksum_payload())
        return hmac.compare_digest(expected.encode("ascii"), self.checksum.encode("utf-8"))

    def record_count(self) -> int:
        return sum(len(rows) for rows in self.tables.values())

    def to_dict(self) -> dict[str, Any]:
        return {**self.checksum_payload(), "checksum": self.checksum}

    @classmethod
    def from_dict(cls, data: Any) -> "SyncSnapshot":
        if not isinstance(data, dict):
            raise IntegrityError(IntegrityErrorKind.corrupted_data, "Snapshot is not an object")
        missing = [f for f in ("tenant_id", "origin_id", "timestamp", "tables", "checksum") if f not in data]
        if missing:
            raise IntegrityError(
                IntegrityErrorKind.corrupted_data,
                f"Snapshot missing fields: {', '.join(missing)}",
                {"missing": missing},
            )
        version = data.get("version", SNAPSHOT_VERSION)
        if not isinstance(version, int) or version > SNAPSHOT_VERSION:
            raise IntegrityError(
                IntegrityErrorKind.version_mismatch,
                f"Unsupported snapshot version: {version}",
                {"version": version, "supported": SNAPSHOT_VERSION},
            )
        timestamp = parse_iso(data["timestamp"]) if isinstance(data["timestamp"], str) else None
        if timestamp is None:
            raise IntegrityError(IntegrityErrorKind.corrupted_data, "Snapshot timestamp unreadable")
        try:
            return cls(
                tenant_id=data["tenant_id"],
                origin_id=data["origin_id"],
                timestamp=timestamp,
                version=version,
                tables=data["tables"],
                checksum=data["checksum"],
                metadata=data.get("metadata") or {},
            )
        except ValueError as e:
            raise IntegrityError(IntegrityErrorKind.corrupted_data, f"Malformed snapshot: {e}")


# ── Conflicts ───────────────────────────────────────────────────────────

class SyncConflict(BaseModel):
    id: str = Field(default_factory=_gen_id)
    table_name: str
    record_id: str
    local_record: dict[str, Any]
    remote_record: dict[str, Any]
    detected_at: datetime = Field(default_factory=utc_now)
    kind: ConflictKind = ConflictKind.update_update


class ConflictResolution(BaseModel):
    conflict_id: str
    strategy: ResolutionStrategy
    resolved_record: dict[str, Any]
    resolved_at: datetime = Field(default_factory=utc_now)
    winner: str                       # "local" | "remote" | "merged" | "manual"
    notes: Optional[str] = None


# ── Metadata / descriptors ──────────────────────────────────────────────

class SyncMetadata(BaseModel):
    table_name: str
    last_sync_timestamp: Optional[int] = None
    last_backup_timestamp: Optional[int] = None
    pending_change_count: int = 0
    last_origin_id: Optional[str] = None


class BackupDescriptor(BaseModel):
    id: str
    name: str
    created_at: datetime
    size: int = 0
    tenant_id: Optional[str] = None
    origin_id: Optional[str] = None
    kind: BackupKind = BackupKind.backup
    table_name: Optional[str] = None


# ── Progress / results ──────────────────────────────────────────────────

class SyncProgress(BaseModel):
    operation: SyncOperation
    fraction: float = 0.0
    step: str = ""


class SyncResult(BaseModel):
    status: ResultStatus
    operation: SyncOperation
    started_at: datetime
    duration_seconds: float = 0.0
    counts: dict[str, int] = Field(default_factory=dict)
    unresolved_conflicts: list[str] = Field(default_factory=list)
    error_category: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    requires_reauth: bool = False
    retry_after_seconds: Optional[float] = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (ResultStatus.success, ResultStatus.partial)

    @classmethod
    def from_error(
        cls,
        operation: SyncOperation,
        error: BaseException,
        started_at: datetime,
        duration_seconds: float = 0.0,
        counts: Optional[dict[str, int]] = None,
    ) -> "SyncResult":
        status = ResultStatus.failure
        if isinstance(error, SyncError):
            if error.kind == OperationErrorKind.cancelled:
                status = ResultStatus.cancelled
            return cls(
                status=status,
                operation=operation,
                started_at=started_at,
                duration_seconds=duration_seconds,
                counts=dict(counts or {}),
                error_category=error.category,
                error_kind=error.kind.value,
                error_message=error.message,
                requires_reauth=error.requires_reauth,
                retry_after_seconds=getattr(error, "retry_after", None),
                details=error.context,
            )
        return cls(
            status=status,
            operation=operation,
            started_at=started_at,
            duration_seconds=duration_seconds,
            counts=dict(counts or {}),
            error_category="unexpected",
            error_kind=type(error).__name__,
            error_message=str(error) or type(error).__name__,
        )
