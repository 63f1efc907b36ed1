"""
High-level sync engine: encrypted per-tenant sync, backup and restore.

Every operation listed below returns a SyncResult and never raises. At most one
operation runs at a time per engine; a second caller gets a failure result
with ``already_in_progress`` ("sync in progress").

    sync(full)         upload pending changes per table, then pull the latest snapshot
    backup()           encrypt and upload a full snapshot, then apply retention
    restore()          download, decrypt, validate and import a snapshot
    reconcile()        restore when the remote is newer, otherwise back up
    cleanup_backups()  apply the retention policy to remote objects

Remote calls run in worker threads under a ResilientExecutor (circuit
breaker around retry). Local writes for a table are committed before the
next table is touched, so a failure or cancellation leaves untouched tables
as they were.
"""

import asyncio
import enum
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from clinicsync.config.settings import Settings, settings as default_settings
from clinicsync.storage.records import RecordStore, SqlRecordStore
from clinicsync.storage.secrets import FileSecretStorage, SecretStorage
from clinicsync.sync.backups import (
    backup_name, backup_statistics, filter_backups, latest_backup, sync_name,
)
from clinicsync.sync.clock import Clock, from_epoch_ms, to_epoch_ms, utc_now
from clinicsync.sync.cloud import StorageTransport, build_transport
from clinicsync.sync.conflict import ConflictResolver, Decision
from clinicsync.sync.debounce import Debouncer
from clinicsync.sync.encryption import EncryptedPayload, EncryptionCodec
from clinicsync.sync.errors import (
    ConflictError, ConflictErrorKind, IntegrityError, IntegrityErrorKind,
    OperationError, OperationErrorKind, StorageError, StorageErrorKind, SyncError,
)
from clinicsync.sync.keys import KeyManager, KeyMaterial
from clinicsync.sync.models import (
    BackupDescriptor, BackupKind, ConflictResolution, EngineStatus, Record,
    RecordStatus, ResolutionStrategy, ResultStatus, SyncConflict, SyncMetadata,
    SyncOperation, SyncProgress, SyncResult, SyncSnapshot,
)
from clinicsync.sync.resilience import CircuitBreaker, ResilientExecutor, RetryPolicy
from clinicsync.sync.retention import RetentionPolicy, prune

logger = logging.getLogger(__name__)

ORIGIN_ID_SECRET = "device/origin_id"

ProgressListener = Callable[[SyncProgress], None]


class ReconcileAction(str, enum.Enum):
    backup = "backup"
    restore = "restore"


def reconcile_decision(
    local_last_save: Optional[datetime],
    remote_latest: Optional[datetime],
) -> ReconcileAction:
    """Restore when the remote is newer or nothing was ever saved locally.

    Compared at millisecond precision, the resolution of stored save times.
    """
    if remote_latest is None:
        return ReconcileAction.backup
    if local_last_save is None:
        return ReconcileAction.restore
    if to_epoch_ms(remote_latest) > to_epoch_ms(local_last_save):
        return ReconcileAction.restore
    return ReconcileAction.backup


@dataclass
class _Outcome:
    unresolved: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


class SyncEngine:
    """Orchestrates sync, backup and restore for one tenant on one device."""

    def __init__(
        self,
        tenant_id: str,
        origin_id: str,
        records: RecordStore,
        transport: StorageTransport,
        keys: KeyManager,
        codec: EncryptionCodec,
        executor: Optional[ResilientExecutor] = None,
        tables: Optional[list[str]] = None,
        conflict_strategy: ResolutionStrategy = ResolutionStrategy.last_write_wins,
        retention: Optional[RetentionPolicy] = None,
        legacy_key_fallback: bool = True,
        sync_interval: Optional[float] = None,
        auto_backup_delay: Optional[float] = None,
        clock: Clock = utc_now,
    ):
        self.tenant_id = tenant_id
        self.origin_id = origin_id
        self.tables = list(tables if tables is not None else default_settings.sync_tables)
        self.conflict_strategy = ResolutionStrategy(conflict_strategy)
        self.retention = retention or RetentionPolicy.from_settings()
        self.legacy_key_fallback = legacy_key_fallback
        self.sync_interval = sync_interval or default_settings.sync_interval_seconds

        self._records = records
        self._transport = transport
        self._keys = keys
        self._codec = codec
        self._executor = executor or ResilientExecutor(
            RetryPolicy.from_settings(), CircuitBreaker("storage")
        )
        self._resolver = ConflictResolver(origin_id, clock=clock)
        self._clock = clock

        self._status = EngineStatus.idle
        self._operation: Optional[SyncOperation] = None
        self._progress: Optional[SyncProgress] = None
        self._listeners: list[ProgressListener] = []
        self._cancel_requested = False
        self._last_result: Optional[SyncResult] = None
        self._auto_sync_task: Optional[asyncio.Task] = None
        self._online = True
        self._auto_backup = Debouncer(
            self._auto_backup_run,
            auto_backup_delay if auto_backup_delay is not None else default_settings.auto_backup_debounce_seconds,
            name="auto-backup",
        )

    # ── State ───────────────────────────────────────────────────────

    @property
    def state(self) -> EngineStatus:
        return self._status

    @property
    def is_busy(self) -> bool:
        return self._status not in (EngineStatus.idle, EngineStatus.error)

    @property
    def progress(self) -> Optional[SyncProgress]:
        return self._progress

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    @property
    def executor(self) -> ResilientExecutor:
        return self._executor

    @property
    def keys(self) -> KeyManager:
        return self._keys

    @property
    def records(self) -> RecordStore:
        return self._records

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        """Subscribe to progress updates. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def cancel(self) -> bool:
        """Ask the running operation to stop at its next remote call."""
        if not self.is_busy:
            return False
        self._cancel_requested = True
        logger.info("Cancellation requested for %s", self._operation.value if self._operation else "operation")
        return True

    # ── Sync ────────────────────────────────────────────────────────

    async def sync(self, full: bool = False) -> SyncResult:
        operation = SyncOperation.full_sync if full else SyncOperation.sync
        return await self._run(operation, EngineStatus.syncing, lambda counts: self._sync_pass(full, counts))

    async def full_sync(self) -> SyncResult:
        return await self.sync(full=True)

    async def _sync_pass(self, full: bool, counts: Counter) -> _Outcome:
        metadata = {table: self._records.get_sync_metadata(table) for table in self.tables}
        stamps = [m.last_sync_timestamp for m in metadata.values() if m and m.last_sync_timestamp]
        if not full and not stamps:
            logger.info("No previous sync for tenant %s; running full sync", self.tenant_id)
            full = True
        # A table without a stamp (newly enabled) pulls the window back to 0.
        since = 0 if full else min(
            ((m.last_sync_timestamp or 0) if m else 0 for m in metadata.values()), default=0
        )
        pass_started = self._now_ms()

        self._report(0.05, "Preparing encryption key")
        key = self._active_key()

        for index, table in enumerate(self.tables):
            self._report(0.1 + 0.4 * index / max(len(self.tables), 1), f"Uploading {table}")
            changed = self._records.changed_since(table, since)
            if not changed:
                continue
            snapshot = SyncSnapshot.create(
                self.tenant_id,
                self.origin_id,
                {table: [r.to_flat() for r in changed]},
                metadata={
                    "kind": BackupKind.sync.value,
                    "full": full,
                    "since": since,
                    "key_id": key.key_id,
                },
                timestamp=self._clock(),
            )
            payload = self._codec.encrypt(snapshot.to_dict(), key.key, key_id=key.key_id)
            name = sync_name(self.tenant_id, table, snapshot.timestamp)
            await self._remote(f"upload {name}", self._transport.upload, name, payload.to_bytes())
            marked = self._records.mark_synced(table, {r.id: r.last_modified for r in changed})
            counts["uploaded"] += len(changed)
            if marked < len(changed):
                logger.info("%d %s records changed during upload; left pending", len(changed) - marked, table)
            logger.info("Uploaded %d changes from %s", len(changed), table)

        self._report(0.5, "Checking remote snapshots")
        descriptor = latest_backup(await self._list_remote(), self.tenant_id)
        outcome = _Outcome(details={"full": full, "since": since})
        remote_origin = None
        if descriptor is None:
            logger.info("No remote snapshot for tenant %s", self.tenant_id)
        else:
            self._report(0.6, "Downloading remote snapshot")
            snapshot, key_id = await self._fetch_snapshot(descriptor)
            self._report(0.7, "Applying remote changes")
            outcome.unresolved = self._apply_snapshot(snapshot, metadata, counts)
            outcome.details.update({"snapshot": descriptor.name, "key_id": key_id})
            remote_origin = snapshot.origin_id

        self._report(0.9, "Updating sync metadata")
        for table in self.tables:
            previous = metadata.get(table) or SyncMetadata(table_name=table)
            self._records.set_sync_metadata(table, previous.model_copy(update={
                "last_sync_timestamp": pass_started,
                "pending_change_count": self._records.pending_count(table),
                "last_origin_id": remote_origin or previous.last_origin_id or self.origin_id,
            }))
        return outcome

    # ── Backup ──────────────────────────────────────────────────────

    async def backup(self) -> SyncResult:
        return await self._run(SyncOperation.backup, EngineStatus.backing_up, self._backup_pass)

    async def _backup_pass(self, counts: Counter) -> _Outcome:
        self._report(0.1, "Exporting local data")
        tables = {table: [r.to_flat() for r in self._records.all_records(table)] for table in self.tables}
        counts["records"] = sum(len(rows) for rows in tables.values())

        self._report(0.3, "Encrypting snapshot")
        key = self._active_key()
        snapshot = SyncSnapshot.create(
            self.tenant_id,
            self.origin_id,
            tables,
            metadata={
                "kind": BackupKind.backup.value,
                "record_count": counts["records"],
                "key_id": key.key_id,
            },
            timestamp=self._clock(),
        )
        data = self._codec.encrypt(snapshot.to_dict(), key.key, key_id=key.key_id).to_bytes()
        name = backup_name(self.tenant_id, snapshot.timestamp)

        self._report(0.5, "Uploading backup")
        object_id = await self._remote(f"upload {name}", self._transport.upload, name, data)
        logger.info("Backup %s uploaded (%d records, %d bytes)", name, counts["records"], len(data))

        self._report(0.8, "Applying retention policy")
        try:
            counts["pruned"] = len(await self._prune_remote(self.retention))
        except Exception as e:
            logger.warning("Backup retention cleanup failed: %s", e)

        self._report(0.95, "Updating sync metadata")
        saved_at = to_epoch_ms(snapshot.timestamp)
        for table in self.tables:
            previous = self._records.get_sync_metadata(table) or SyncMetadata(table_name=table)
            self._records.set_sync_metadata(table, previous.model_copy(update={
                "last_backup_timestamp": saved_at,
                "pending_change_count": self._records.pending_count(table),
            }))
        return _Outcome(details={"backup_id": object_id, "name": name, "size": len(data), "key_id": key.key_id})

    # ── Restore ─────────────────────────────────────────────────────

    async def restore(self, backup_id: Optional[str] = None) -> SyncResult:
        return await self._run(
            SyncOperation.restore, EngineStatus.restoring, lambda counts: self._restore_pass(counts, backup_id)
        )

    async def _restore_pass(
        self,
        counts: Counter,
        backup_id: Optional[str] = None,
        descriptors: Optional[list[BackupDescriptor]] = None,
    ) -> _Outcome:
        self._report(0.1, "Locating backup")
        if descriptors is None:
            descriptors = await self._list_remote()
        backups = filter_backups(descriptors, self.tenant_id)
        if backup_id:
            descriptor = next((d for d in backups if backup_id in (d.id, d.name)), None)
        else:
            descriptor = backups[0] if backups else None
        if descriptor is None:
            raise StorageError(
                StorageErrorKind.not_found,
                f"Backup not found: {backup_id}" if backup_id else "No backups available",
                {"tenant_id": self.tenant_id},
            )

        self._report(0.3, "Downloading and decrypting backup")
        snapshot, key_id = await self._fetch_snapshot(descriptor)

        self._report(0.6, "Importing records")
        metadata = {table: self._records.get_sync_metadata(table) for table in self.tables}
        unresolved = self._apply_snapshot(snapshot, metadata, counts)

        self._report(0.9, "Updating sync metadata")
        restored_at = self._now_ms()
        for table in self.tables:
            previous = metadata.get(table) or SyncMetadata(table_name=table)
            self._records.set_sync_metadata(table, previous.model_copy(update={
                "last_backup_timestamp": restored_at,
                "pending_change_count": self._records.pending_count(table),
                "last_origin_id": snapshot.origin_id,
            }))
        logger.info("Restored %s (%d records)", descriptor.name, snapshot.record_count())
        return _Outcome(
            unresolved=unresolved,
            details={"backup_id": descriptor.id, "name": descriptor.name, "key_id": key_id},
        )

    # ── Reconcile ───────────────────────────────────────────────────

    async def reconcile(self) -> SyncResult:
        return await self._run(SyncOperation.reconcile, EngineStatus.syncing, self._reconcile_pass)

    async def _reconcile_pass(self, counts: Counter) -> _Outcome:
        descriptors = await self._list_remote()
        remote = latest_backup(descriptors, self.tenant_id)
        action = reconcile_decision(self.last_save_time(), remote.created_at if remote else None)
        logger.info("Reconcile for tenant %s: %s", self.tenant_id, action.value)
        if action == ReconcileAction.restore:
            self._status = EngineStatus.restoring
            outcome = await self._restore_pass(counts, remote.id, descriptors)
        else:
            self._status = EngineStatus.backing_up
            outcome = await self._backup_pass(counts)
        outcome.details["action"] = action.value
        return outcome

    def last_save_time(self) -> Optional[datetime]:
        """Most recent local backup or restore across sync-enabled tables."""
        stamps = []
        for table in self.tables:
            meta = self._records.get_sync_metadata(table)
            if meta and meta.last_backup_timestamp:
                stamps.append(meta.last_backup_timestamp)
        return from_epoch_ms(max(stamps)) if stamps else None

    # ── Conflicts ───────────────────────────────────────────────────

    def list_conflicts(self, table: Optional[str] = None) -> list[SyncConflict]:
        return self._records.list_conflicts(table)

    async def resolve_conflict(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        record: Optional[dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> SyncResult:
        return await self._run(
            SyncOperation.resolve,
            EngineStatus.syncing,
            lambda counts: self._resolve_stored(counts, conflict_id, strategy, record, notes),
        )

    async def _resolve_stored(
        self,
        counts: Counter,
        conflict_id: str,
        strategy: ResolutionStrategy,
        record: Optional[dict[str, Any]],
        notes: Optional[str],
    ) -> _Outcome:
        conflict = self._records.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictError(
                ConflictErrorKind.invalid_resolution,
                f"Unknown conflict: {conflict_id}",
                {"conflict_id": conflict_id},
            )
        resolution = self._resolver.resolve(conflict, strategy, manual_record=record, notes=notes)
        self._apply_resolution(conflict.table_name, resolution)
        self._records.delete_conflict(conflict_id)
        self._resolver.forget(conflict_id)
        counts["resolved"] += 1
        return _Outcome(details=resolution.model_dump(mode="json"))

    # ── Backup catalog ──────────────────────────────────────────────

    async def list_backups(self) -> list[BackupDescriptor]:
        """Full backups for this tenant, newest first. Raises SyncError."""
        return filter_backups(await self._list_remote(), self.tenant_id)

    async def backup_statistics(self) -> dict:
        return backup_statistics(await self.list_backups())

    def plan_cleanup(
        self,
        descriptors: list[BackupDescriptor],
        policy: Optional[RetentionPolicy] = None,
        now: Optional[datetime] = None,
    ) -> list[BackupDescriptor]:
        """Objects the retention policy drops, applied to each kind separately."""
        policy = policy or self.retention
        now = now or self._clock()
        doomed = []
        for kind in BackupKind:
            group = filter_backups(descriptors, self.tenant_id, kind=kind)
            ids = prune(group, policy, now)
            doomed.extend(d for d in group if d.id in ids)
        return doomed

    async def cleanup_backups(
        self,
        policy: Optional[RetentionPolicy] = None,
        dry_run: bool = False,
    ) -> SyncResult:
        """Delete remote objects the retention policy no longer keeps.

        With ``dry_run`` nothing is deleted; ``details["planned"]`` lists
        what a real run would remove.
        """
        return await self._run(
            SyncOperation.cleanup,
            EngineStatus.cleaning,
            lambda counts: self._cleanup_pass(counts, policy or self.retention, dry_run),
        )

    async def _cleanup_pass(self, counts: Counter, policy: RetentionPolicy, dry_run: bool) -> _Outcome:
        self._report(0.1, "Listing remote objects")
        descriptors = await self._list_remote()
        doomed = self.plan_cleanup(descriptors, policy)
        details = {
            "dry_run": dry_run,
            "total": len(filter_backups(descriptors, self.tenant_id, kind=None)),
            "planned": [d.id for d in doomed],
            "planned_names": [d.name for d in doomed],
            "deleted": [],
        }
        if not dry_run:
            self._report(0.5, "Deleting expired objects")
            details["deleted"] = await self._delete_remote(doomed)
        counts["deleted"] = len(details["deleted"])
        return _Outcome(details=details)

    async def _prune_remote(self, policy: RetentionPolicy) -> list[str]:
        return await self._delete_remote(self.plan_cleanup(await self._list_remote(), policy))

    async def _delete_remote(self, doomed: list[BackupDescriptor]) -> list[str]:
        deleted = []
        for descriptor in doomed:
            await self._remote(f"delete {descriptor.name}", self._transport.delete, descriptor.id)
            deleted.append(descriptor.id)
        if deleted:
            logger.info("Retention removed %d remote objects for tenant %s", len(deleted), self.tenant_id)
        return deleted

    # ── Auto-Sync Loop ──────────────────────────────────────────────

    async def start_auto_sync(self) -> None:
        """Start the background auto-sync loop."""
        if self._auto_sync_task and not self._auto_sync_task.done():
            return
        self._auto_sync_task = asyncio.create_task(self._auto_sync_loop())
        logger.info("Auto-sync started (interval: %ss)", self.sync_interval)

    async def stop_auto_sync(self) -> None:
        """Stop the background auto-sync loop and any pending auto-backup."""
        self._auto_backup.cancel()
        if self._auto_sync_task:
            self._auto_sync_task.cancel()
            try:
                await self._auto_sync_task
            except asyncio.CancelledError:
                pass
            self._auto_sync_task = None
            logger.info("Auto-sync stopped")

    async def _auto_sync_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sync_interval)
                if self._online and not self.is_busy:
                    result = await self.sync()
                    if not result.ok:
                        logger.warning("Auto-sync %s: %s", result.status.value, result.error_message)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Auto-sync error")

    def schedule_auto_backup(self) -> None:
        """Back up once local writes settle. Repeated calls push the backup out."""
        self._auto_backup.trigger()

    async def _auto_backup_run(self) -> None:
        result = await self.backup()
        if not result.ok:
            logger.warning("Auto-backup %s: %s", result.status.value, result.error_message)

    # ── Connectivity ────────────────────────────────────────────────

    async def set_online(self, online: bool) -> Optional[SyncResult]:
        """Update connectivity state. Triggers a sync on reconnect."""
        was_offline = not self._online
        self._online = online
        if online and was_offline and not self.is_busy:
            logger.info("Back online; triggering sync")
            return await self.sync()
        return None

    # ── Status ──────────────────────────────────────────────────────

    def status(self) -> dict:
        last = self._last_result
        return {
            "tenant_id": self.tenant_id,
            "origin_id": self.origin_id,
            "state": self._status.value,
            "operation": self._operation.value if self._operation else None,
            "progress": self._progress.model_dump(mode="json") if self._progress else None,
            "online": self._online,
            "auto_sync_running": (
                self._auto_sync_task is not None
                and not self._auto_sync_task.done()
            ),
            "auto_backup_pending": self._auto_backup.pending,
            "tables": list(self.tables),
            "conflict_strategy": self.conflict_strategy.value,
            "pending_conflicts": len(self._records.list_conflicts()),
            "needs_key_rotation": self._keys.needs_key_rotation(self.tenant_id),
            "circuit": self._executor.breaker.stats(),
            "last_result": last.model_dump(mode="json") if last else None,
        }

    # ── Internal: operation wrapper ─────────────────────────────────

    async def _run(
        self,
        operation: SyncOperation,
        status: EngineStatus,
        body: Callable[[Counter], Awaitable[_Outcome]],
    ) -> SyncResult:
        started_at = self._clock()
        if self.is_busy:
            error = OperationError(
                OperationErrorKind.already_in_progress,
                "Sync in progress",
                {"running": self._operation.value if self._operation else None},
            )
            logger.warning("Rejected %s: %s already running", operation.value, self._status.value)
            return SyncResult.from_error(operation, error, started_at)

        self._status = status
        self._operation = operation
        self._cancel_requested = False
        self._progress = None
        counts: Counter = Counter()
        t0 = time.monotonic()
        self._report(0.0, f"Starting {operation.value}")
        try:
            outcome = await body(counts)
        except Exception as e:
            self._status = EngineStatus.error
            result = SyncResult.from_error(operation, e, started_at, time.monotonic() - t0, counts)
            if result.status == ResultStatus.cancelled:
                logger.info("%s cancelled", operation.value)
            elif isinstance(e, SyncError):
                logger.error("%s failed: %s", operation.value, e)
            else:
                logger.exception("%s failed unexpectedly", operation.value)
            self._notify(f"{result.status.value}: {result.error_message}")
        else:
            result = SyncResult(
                status=ResultStatus.partial if outcome.unresolved else ResultStatus.success,
                operation=operation,
                started_at=started_at,
                duration_seconds=time.monotonic() - t0,
                counts=dict(counts),
                unresolved_conflicts=outcome.unresolved,
                details=outcome.details,
            )
            self._report(1.0, "Complete")
            logger.info("%s finished: %s %s", operation.value, result.status.value, dict(counts))
        finally:
            self._status = EngineStatus.idle
            self._operation = None
            self._cancel_requested = False

        self._last_result = result
        return result

    def _report(self, fraction: float, step: str) -> None:
        current = self._progress.fraction if self._progress else 0.0
        fraction = min(max(fraction, current), 1.0)
        self._progress = SyncProgress(operation=self._operation, fraction=fraction, step=step)
        self._notify(step)

    def _notify(self, step: str) -> None:
        if self._progress is None:
            return
        progress = self._progress.model_copy(update={"step": step})
        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception:
                logger.exception("Progress listener failed")

    # ── Internal: remote ────────────────────────────────────────────

    def _checkpoint(self) -> None:
        if self._cancel_requested:
            raise OperationError(OperationErrorKind.cancelled, "Operation cancelled")

    async def _remote(self, name: str, func: Callable[..., Any], *args: Any) -> Any:
        self._checkpoint()
        return await self._executor.run_blocking(func, *args, operation_name=name)

    async def _list_remote(self) -> list[BackupDescriptor]:
        return await self._remote("list", self._transport.list)

    async def _fetch_snapshot(self, descriptor: BackupDescriptor) -> tuple[SyncSnapshot, str]:
        data = await self._remote(f"download {descriptor.name}", self._transport.download, descriptor.id)
        payload = EncryptedPayload.from_bytes(data)
        candidates = self._keys.decryption_candidates(
            self.tenant_id,
            hint_key_id=payload.key_id,
            origin_id=self.origin_id,
            include_legacy=self.legacy_key_fallback,
        )
        obj, key_id = self._codec.decrypt_with_candidates(payload, candidates)
        snapshot = SyncSnapshot.from_dict(obj)
        if not snapshot.validate_integrity():
            raise IntegrityError(
                IntegrityErrorKind.corrupted_data,
                "Snapshot checksum mismatch",
                {"backup": descriptor.name},
            )
        if snapshot.tenant_id != self.tenant_id:
            raise IntegrityError(
                IntegrityErrorKind.corrupted_data,
                f"Snapshot belongs to tenant {snapshot.tenant_id!r}",
                {"backup": descriptor.name},
            )
        return snapshot, key_id

    # ── Internal: local apply ───────────────────────────────────────

    def _active_key(self) -> KeyMaterial:
        key_id = self._keys.derive_and_store_key(self.tenant_id)
        key = self._keys.get_key(key_id)
        if key is None:
            raise StorageError(StorageErrorKind.not_found, f"Key {key_id} vanished after creation")
        return key

    def _apply_snapshot(
        self,
        snapshot: SyncSnapshot,
        metadata: dict[str, Optional[SyncMetadata]],
        counts: Counter,
    ) -> list[str]:
        """Merge snapshot rows into local tables. Returns unresolved conflict ids."""
        unresolved: list[str] = []
        for table, rows in snapshot.tables.items():
            if table not in self.tables:
                logger.debug("Skipping table %s: not sync-enabled", table)
                continue
            meta = metadata.get(table)
            last_sync = meta.last_sync_timestamp if meta else None
            for row in rows:
                self._apply_row(table, Record.from_flat(row, RecordStatus.synced), last_sync, counts, unresolved)
        return unresolved

    def _apply_row(
        self,
        table: str,
        remote: Record,
        last_sync: Optional[int],
        counts: Counter,
        unresolved: list[str],
    ) -> None:
        remote = remote.model_copy(update={"sync_status": RecordStatus.synced})
        local = self._records.get_by_id(table, remote.id)
        if local is None:
            self._records.insert(table, remote)
            counts["inserted"] += 1
            return

        decision = self._resolver.classify(local, remote, last_sync)
        if decision == Decision.identical:
            counts["unchanged"] += 1
        elif decision == Decision.apply_remote:
            self._records.update(table, remote.id, remote)
            counts["updated"] += 1
        elif decision == Decision.keep_local:
            counts["kept_local"] += 1
        else:
            conflict = self._resolver.detect(table, local, remote, last_sync)
            counts["conflicts"] += 1
            if self.conflict_strategy == ResolutionStrategy.manual:
                self._records.save_conflict(conflict)
                unresolved.append(conflict.id)
                logger.info("Conflict on %s/%s left for manual resolution", table, remote.id)
            else:
                self._apply_resolution(table, self._resolver.resolve(conflict, self.conflict_strategy))
                self._resolver.forget(conflict.id)
                counts["resolved"] += 1

    def _apply_resolution(self, table: str, resolution: ConflictResolution) -> None:
        if resolution.winner == "local":
            return
        record = Record.from_flat(resolution.resolved_record)
        if resolution.winner == "remote":
            record = record.model_copy(update={"sync_status": RecordStatus.synced})
        elif resolution.winner == "manual":
            record = record.model_copy(update={
                "last_modified": self._now_ms(),
                "sync_status": RecordStatus.pending,
                "origin_id": self.origin_id,
            })
        if self._records.get_by_id(table, record.id) is None:
            self._records.insert(table, record)
        else:
            self._records.update(table, record.id, record)

    def _now_ms(self) -> int:
        return to_epoch_ms(self._clock())


# ── Factory ─────────────────────────────────────────────────────────────

def load_or_create_origin_id(storage: SecretStorage) -> str:
    """Stable per-device origin id, persisted alongside the keys."""
    stored = storage.read(ORIGIN_ID_SECRET)
    if stored:
        return stored.decode("utf-8")
    origin_id = uuid.uuid4().hex
    storage.write(ORIGIN_ID_SECRET, origin_id.encode("utf-8"))
    logger.info("Created new origin id: %s", origin_id)
    return origin_id


def build_engine(
    cfg: Settings = default_settings,
    secrets: Optional[SecretStorage] = None,
    transport: Optional[StorageTransport] = None,
    records: Optional[RecordStore] = None,
) -> SyncEngine:
    """Wire a SyncEngine from settings. Collaborators may be overridden."""
    secrets = secrets or FileSecretStorage(cfg.secrets_path, passphrase=cfg.secrets_passphrase)
    codec = EncryptionCodec(
        iterations=cfg.pbkdf2_iterations,
        nonce_len=cfg.crypto_nonce_len,
        tag_len=cfg.crypto_tag_len,
    )
    keys = KeyManager(
        secrets,
        codec,
        rotation_days=cfg.key_rotation_days,
        history_limit=cfg.key_history_limit,
    )
    executor = ResilientExecutor(
        RetryPolicy.from_settings(cfg),
        CircuitBreaker(
            "storage",
            failure_threshold=cfg.breaker_failure_threshold,
            reset_timeout=cfg.breaker_reset_timeout_seconds,
            timeout=cfg.breaker_timeout_seconds,
        ),
    )
    return SyncEngine(
        tenant_id=cfg.tenant_id,
        origin_id=cfg.origin_id or load_or_create_origin_id(secrets),
        records=records or SqlRecordStore.from_url(cfg.database_url),
        transport=transport or build_transport(cfg),
        keys=keys,
        codec=codec,
        executor=executor,
        tables=cfg.sync_tables,
        conflict_strategy=ResolutionStrategy(cfg.conflict_strategy),
        retention=RetentionPolicy.from_settings(cfg),
        legacy_key_fallback=cfg.legacy_key_fallback,
        sync_interval=cfg.sync_interval_seconds,
        auto_backup_delay=cfg.auto_backup_debounce_seconds,
    )
