"""
Conflict detection and resolution for divergent records.

A remote record is compared against the local one relative to the table's
last sync point. When both sides changed since then and their content
differs, a SyncConflict is raised and resolved with one of:

    use_local, use_remote : take one side as-is
    merge                 : field-level, data-loss-averse
    manual                : caller supplies the record
    last_write_wins       : default; remote only if strictly newer
"""

import enum
import logging
from typing import Any, Optional

from clinicsync.sync.clock import Clock, to_epoch_ms, utc_now
from clinicsync.sync.errors import ConflictError, ConflictErrorKind
from clinicsync.sync.models import (
    BOOKKEEPING_FIELDS, ConflictResolution, Record, RecordStatus,
    ResolutionStrategy, SyncConflict,
)

logger = logging.getLogger(__name__)

TIMESTAMP_MARKERS = ("timestamp", "modified", "date")


class Decision(str, enum.Enum):
    identical = "identical"
    apply_remote = "apply_remote"
    keep_local = "keep_local"
    conflict = "conflict"


def is_timestamp_field(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in TIMESTAMP_MARKERS)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def later_timestamp(local_value: Any, remote_value: Any) -> Any:
    """The later of two timestamps; the local value when either is unparseable."""
    local_ms = to_epoch_ms(local_value)
    remote_ms = to_epoch_ms(remote_value)
    if local_ms is None or remote_ms is None:
        return local_value
    return remote_value if remote_ms > local_ms else local_value


class ConflictResolver:
    """Classifies incoming remote records and resolves conflicts."""

    def __init__(self, origin_id: str, clock: Clock = utc_now):
        self.origin_id = origin_id
        self._clock = clock
        self._resolutions: dict[tuple[str, ResolutionStrategy], ConflictResolution] = {}

    # ── Detection ───────────────────────────────────────────────

    def classify(self, local: Record, remote: Record, last_sync: Optional[int]) -> Decision:
        if local.same_content(remote):
            return Decision.identical
        baseline = last_sync or 0
        local_changed = local.sync_status == RecordStatus.pending or local.last_modified > baseline
        remote_changed = remote.last_modified > baseline
        if local_changed and remote_changed:
            return Decision.conflict
        if remote_changed:
            return Decision.apply_remote
        if local_changed:
            return Decision.keep_local
        return Decision.apply_remote if remote.last_modified > local.last_modified else Decision.keep_local

    def detect(
        self,
        table_name: str,
        local: Record,
        remote: Record,
        last_sync: Optional[int],
    ) -> Optional[SyncConflict]:
        if self.classify(local, remote, last_sync) != Decision.conflict:
            return None
        return SyncConflict(
            table_name=table_name,
            record_id=local.id,
            local_record=local.to_flat(),
            remote_record=remote.to_flat(),
            detected_at=self._clock(),
        )

    # ── Resolution ──────────────────────────────────────────────

    def resolve(
        self,
        conflict: SyncConflict,
        strategy: ResolutionStrategy = ResolutionStrategy.last_write_wins,
        manual_record: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> ConflictResolution:
        strategy = ResolutionStrategy(strategy)
        cache_key = (conflict.id, strategy)
        if strategy != ResolutionStrategy.manual and cache_key in self._resolutions:
            return self._resolutions[cache_key]

        local, remote = conflict.local_record, conflict.remote_record
        if strategy == ResolutionStrategy.use_local:
            resolved, winner = dict(local), "local"
        elif strategy == ResolutionStrategy.use_remote:
            resolved, winner = dict(remote), "remote"
        elif strategy == ResolutionStrategy.last_write_wins:
            local_ms = to_epoch_ms(local.get("last_modified")) or 0
            remote_ms = to_epoch_ms(remote.get("last_modified")) or 0
            if remote_ms > local_ms:
                resolved, winner = dict(remote), "remote"
            else:
                resolved, winner = dict(local), "local"
        elif strategy == ResolutionStrategy.merge:
            resolved, winner = self.merge(local, remote), "merged"
        else:
            resolved, winner = self._manual(conflict, manual_record), "manual"

        resolution = ConflictResolution(
            conflict_id=conflict.id,
            strategy=strategy,
            resolved_record=resolved,
            resolved_at=self._clock(),
            winner=winner,
            notes=notes,
        )
        if strategy != ResolutionStrategy.manual:
            self._resolutions[cache_key] = resolution
        logger.info(
            "Resolved conflict %s on %s/%s with %s (%s)",
            conflict.id, conflict.table_name, conflict.record_id, strategy.value, winner,
        )
        return resolution

    def forget(self, conflict_id: str) -> None:
        for key in [k for k in self._resolutions if k[0] == conflict_id]:
            del self._resolutions[key]

    def merge(self, local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
        """Field-level merge starting from the local record."""
        merged = dict(local)
        for name, remote_value in remote.items():
            if name in BOOKKEEPING_FIELDS or name in ("id", "last_modified"):
                continue
            local_value = local.get(name)
            if is_empty(local_value):
                if not is_empty(remote_value):
                    merged[name] = remote_value
            elif is_empty(remote_value):
                continue
            elif is_timestamp_field(name):
                merged[name] = later_timestamp(local_value, remote_value)
            elif is_number(local_value) and is_number(remote_value):
                merged[name] = max(local_value, remote_value)

        merged["last_modified"] = to_epoch_ms(self._clock())
        merged["sync_status"] = RecordStatus.pending.value
        merged["origin_id"] = self.origin_id
        return merged

    def _manual(self, conflict: SyncConflict, record: Optional[dict[str, Any]]) -> dict[str, Any]:
        if record is None:
            raise ConflictError(
                ConflictErrorKind.invalid_resolution,
                "Manual resolution requires a resolved record",
                {"conflict_id": conflict.id},
            )
        supplied_id = record.get("id")
        if supplied_id is not None and str(supplied_id) != conflict.record_id:
            raise ConflictError(
                ConflictErrorKind.invalid_resolution,
                f"Resolved record id {supplied_id!r} does not match {conflict.record_id!r}",
                {"conflict_id": conflict.id},
            )
        return {**record, "id": conflict.record_id}
