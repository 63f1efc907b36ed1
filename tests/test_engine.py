"""Tests for the SyncEngine: sync, backup, restore, reconcile and conflicts.

Each engine is a separate device with its own database; all of them share
one remote directory and one key store.
"""

from __future__ import annotations

import asyncio
import dataclasses
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from clinicsync.sync.backups import backup_name, describe, sync_name
from clinicsync.sync.clock import now_ms, utc_now
from clinicsync.sync.cloud import LocalDirectoryTransport
from clinicsync.sync.encryption import EncryptedPayload
from clinicsync.sync.engine import ReconcileAction, reconcile_decision
from clinicsync.sync.errors import NetworkError, NetworkErrorKind, StorageError, StorageErrorKind
from clinicsync.sync.models import (
    BackupKind, EngineStatus, RecordStatus, ResolutionStrategy, ResultStatus, SyncOperation, SyncSnapshot,
)
from clinicsync.sync.retention import RetentionPolicy

from conftest import TENANT, make_record


class GatedTransport(LocalDirectoryTransport):
    """Blocks ``list`` until the test opens the gate."""

    def __init__(self, root: Path, gate: threading.Event):
        super().__init__(root)
        self.gate = gate

    def list(self):
        self.gate.wait(timeout=5)
        return super().list()


class ReadOnlyTransport(LocalDirectoryTransport):
    def delete(self, object_id: str) -> None:
        raise StorageError(StorageErrorKind.access_denied, "read-only share")


class OfflineTransport(LocalDirectoryTransport):
    def list(self):
        raise NetworkError(NetworkErrorKind.no_connectivity, "offline")


class EditingTransport(LocalDirectoryTransport):
    """Runs ``on_upload`` after storing a blob, before the upload returns."""

    on_upload = None

    def upload(self, name: str, data: bytes) -> str:
        object_id = super().upload(name, data)
        if self.on_upload is not None:
            self.on_upload()
        return object_id


def _seed(engine, *ids, table="patients", **fields):
    for rid in ids:
        engine.records.insert(table, make_record(rid, now_ms(), origin=engine.origin_id, name=f"name-{rid}", **fields))


class TestBackupRestore:
    """Encrypted backup on one device, restore on another."""

    @pytest.mark.asyncio
    async def test_restore_on_second_device(self, make_engine) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1", "p2")
        _seed(a, "v1", table="visits")

        backup = await a.backup()
        restore = await b.restore()

        assert backup.status == ResultStatus.success
        assert backup.counts["records"] == 3
        assert restore.status == ResultStatus.success
        assert restore.counts["inserted"] == 3
        assert restore.details["backup_id"] == backup.details["backup_id"]
        restored = b.records.get_by_id("patients", "p1")
        assert restored.fields["name"] == "name-p1"
        assert restored.sync_status == RecordStatus.synced

    @pytest.mark.asyncio
    async def test_backup_is_not_plaintext(self, make_engine, remote_dir: Path) -> None:
        a = make_engine("device-a")
        _seed(a, "p1", diagnosis="hypertension")

        result = await a.backup()

        data = (remote_dir / result.details["backup_id"]).read_bytes()
        assert b"hypertension" not in data
        assert EncryptedPayload.from_bytes(data).key_id == result.details["key_id"]

    @pytest.mark.asyncio
    async def test_restore_twice_is_unchanged(self, make_engine) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")
        await a.backup()

        await b.restore()
        again = await b.restore()

        assert again.counts.get("inserted", 0) == 0
        assert again.counts["unchanged"] == 1

    @pytest.mark.asyncio
    async def test_restore_specific_backup(self, make_engine) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")
        first = await a.backup()
        _seed(a, "p2")
        await a.backup()

        result = await b.restore(first.details["name"])

        assert result.ok
        assert b.records.get_by_id("patients", "p2") is None

    @pytest.mark.asyncio
    async def test_restore_without_backups(self, make_engine) -> None:
        result = await make_engine("device-b").restore()

        assert result.status == ResultStatus.failure
        assert result.error_category == "storage"
        assert result.error_kind == StorageErrorKind.not_found.value

    @pytest.mark.asyncio
    async def test_restore_after_key_rotation(self, make_engine, key_manager) -> None:
        """Backups made under an older key still restore from the key history."""
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")
        first = await a.backup()
        key_manager.rotate_key(TENANT)

        result = await b.restore()

        assert result.ok
        assert result.details["key_id"] == first.details["key_id"]


class TestIntegrity:
    """Tampered or foreign backups never reach the local database."""

    @pytest.mark.asyncio
    async def test_forged_snapshot_rejected(self, make_engine, key_manager, codec, transport, remote_dir) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")
        original = await a.backup()

        payload = EncryptedPayload.from_bytes((remote_dir / original.details["backup_id"]).read_bytes())
        key = key_manager.get_key(payload.key_id).key
        obj = codec.decrypt(payload, key)
        obj["tables"]["patients"][0]["name"] = "Mallory"
        forged = codec.encrypt(obj, key, key_id=payload.key_id)
        transport.upload(backup_name(TENANT, utc_now() + timedelta(seconds=1)), forged.to_bytes())

        result = await b.restore()

        assert result.status == ResultStatus.failure
        assert result.error_category == "integrity"
        assert result.error_kind == "corrupted_data"
        assert b.records.all_records("patients") == []

    @pytest.mark.asyncio
    async def test_flipped_ciphertext_rejected(self, make_engine, remote_dir) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")
        result = await a.backup()
        path = remote_dir / result.details["backup_id"]
        payload = EncryptedPayload.from_bytes(path.read_bytes())
        tampered = dataclasses.replace(
            payload, ciphertext=bytes([payload.ciphertext[0] ^ 0x01]) + payload.ciphertext[1:]
        )
        path.write_bytes(tampered.to_bytes())

        restore = await b.restore()

        assert restore.error_kind == "decryption_failed"
        assert b.records.all_records("patients") == []

    @pytest.mark.asyncio
    async def test_other_tenant_snapshot_rejected(self, make_engine, key_manager, codec, transport) -> None:
        b = make_engine("device-b")
        key = key_manager.get_key(key_manager.derive_and_store_key(TENANT))
        snapshot = SyncSnapshot.create("clinic-2", "device-x", {"patients": [{"id": "p9", "last_modified": 1}]})
        payload = codec.encrypt(snapshot.to_dict(), key.key, key_id=key.key_id)
        transport.upload(backup_name(TENANT, utc_now()), payload.to_bytes())

        result = await b.restore()

        assert result.error_kind == "corrupted_data"
        assert b.records.get_by_id("patients", "p9") is None


class TestLegacyKeys:

    def _legacy_backup(self, codec, transport) -> None:
        snapshot = SyncSnapshot.create(
            TENANT, "old-device", {"patients": [{"id": "p1", "name": "Legacy", "last_modified": 1_000}]}
        )
        key = codec.derive_key(TENANT, TENANT.encode("utf-8"))
        transport.upload(backup_name(TENANT, utc_now()), codec.encrypt(snapshot.to_dict(), key).to_bytes())

    @pytest.mark.asyncio
    async def test_restores_with_legacy_tenant_key(self, make_engine, codec, transport) -> None:
        self._legacy_backup(codec, transport)
        b = make_engine("device-b")

        result = await b.restore()

        assert result.ok
        assert result.details["key_id"] == "legacy-tenant"
        assert b.records.get_by_id("patients", "p1").fields["name"] == "Legacy"

    @pytest.mark.asyncio
    async def test_legacy_fallback_disabled(self, make_engine, codec, transport) -> None:
        self._legacy_backup(codec, transport)
        b = make_engine("device-b", legacy_key_fallback=False)

        result = await b.restore()

        assert result.error_kind == "decryption_failed"


class TestSync:
    """Incremental sync uploads and conflict handling."""

    @pytest.mark.asyncio
    async def test_first_sync_is_full_and_uploads_pending(self, make_engine, transport) -> None:
        a = make_engine("device-a")
        _seed(a, "p1", "p2")

        result = await a.sync()

        assert result.status == ResultStatus.success
        assert result.details["full"] is True
        assert result.counts["uploaded"] == 2
        assert a.records.pending_count("patients") == 0
        uploads = [d for d in transport.list() if d.kind == BackupKind.sync]
        assert [d.table_name for d in uploads] == ["patients"]
        assert a.records.get_sync_metadata("patients").last_sync_timestamp is not None

    @pytest.mark.asyncio
    async def test_second_sync_is_incremental(self, make_engine) -> None:
        a = make_engine("device-a")
        _seed(a, "p1")
        await a.sync()

        result = await a.sync()

        assert result.details["full"] is False
        assert result.counts.get("uploaded", 0) == 0

    @pytest.mark.asyncio
    async def test_sync_pulls_latest_backup(self, make_engine) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")
        await a.backup()

        result = await b.sync()

        assert result.counts["inserted"] == 1
        assert b.records.get_by_id("patients", "p1") is not None

    @pytest.mark.asyncio
    async def test_last_write_wins_conflict(self, make_engine) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")
        await a.backup()
        await b.sync()

        b.records.update("patients", "p1", make_record("p1", now_ms() + 1_000, origin="device-b", name="B edit"))
        a.records.update("patients", "p1", make_record("p1", now_ms() + 5_000, origin="device-a", name="A edit"))
        await a.backup()
        result = await b.sync()

        assert result.status == ResultStatus.success
        assert result.counts["conflicts"] == 1
        assert result.counts["resolved"] == 1
        assert b.records.get_by_id("patients", "p1").fields["name"] == "A edit"

    @pytest.mark.asyncio
    async def test_remote_only_change_applied(self, make_engine) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")
        await a.backup()
        await b.sync()

        a.records.update("patients", "p1", make_record("p1", now_ms() + 1_000, name="A edit"))
        await a.backup()
        result = await b.sync()

        assert result.counts["updated"] == 1
        assert result.counts.get("conflicts", 0) == 0

    @pytest.mark.asyncio
    async def test_tables_not_enabled_are_skipped(self, make_engine, key_manager, codec, transport) -> None:
        b = make_engine("device-b")
        key = key_manager.get_key(key_manager.derive_and_store_key(TENANT))
        snapshot = SyncSnapshot.create(TENANT, "device-a", {"audit_log": [{"id": "x1", "last_modified": 1}]})
        transport.upload(backup_name(TENANT, utc_now()), codec.encrypt(snapshot.to_dict(), key.key, key.key_id).to_bytes())

        result = await b.sync()

        assert result.ok
        assert b.records.get_by_id("audit_log", "x1") is None

    @pytest.mark.asyncio
    async def test_edit_during_upload_stays_pending(self, make_engine, remote_dir) -> None:
        remote = EditingTransport(remote_dir)
        a = make_engine("device-a", remote=remote)
        _seed(a, "p1")
        remote.on_upload = lambda: a.records.update(
            "patients", "p1", make_record("p1", now_ms() + 10_000, name="edited mid-upload")
        )

        first = await a.sync()
        remote.on_upload = None

        edited = a.records.get_by_id("patients", "p1")
        assert first.counts["uploaded"] == 1
        assert edited.sync_status == RecordStatus.pending
        assert edited.fields["name"] == "edited mid-upload"

        second = await a.sync()

        assert second.counts["uploaded"] == 1
        assert a.records.pending_count("patients") == 0

    @pytest.mark.asyncio
    async def test_newly_enabled_table_uploads_old_pending_rows(self, make_engine) -> None:
        a = make_engine("device-a")
        a.tables = ["patients"]
        _seed(a, "p1")
        await a.sync()

        a.tables.append("visits")
        a.records.insert("visits", make_record("v1", 1_000))
        result = await a.sync()

        assert result.details["full"] is False
        assert result.details["since"] == 0
        assert result.counts["uploaded"] == 1
        assert a.records.get_by_id("visits", "v1").sync_status == RecordStatus.synced


class TestManualConflicts:

    async def _diverge(self, make_engine):
        a = make_engine("device-a")
        b = make_engine("device-b", strategy=ResolutionStrategy.manual)
        _seed(a, "p1")
        await a.backup()
        await b.sync()
        b.records.update("patients", "p1", make_record("p1", now_ms() + 1_000, origin="device-b", name="B edit"))
        a.records.update("patients", "p1", make_record("p1", now_ms() + 5_000, origin="device-a", name="A edit"))
        await a.backup()
        return a, b

    @pytest.mark.asyncio
    async def test_conflict_left_unresolved(self, make_engine) -> None:
        _, b = await self._diverge(make_engine)

        result = await b.sync()

        assert result.status == ResultStatus.partial
        assert result.ok
        assert len(result.unresolved_conflicts) == 1
        conflict = b.list_conflicts()[0]
        assert conflict.id == result.unresolved_conflicts[0]
        assert conflict.local_record["name"] == "B edit"
        assert conflict.remote_record["name"] == "A edit"
        assert b.records.get_by_id("patients", "p1").fields["name"] == "B edit"

    @pytest.mark.asyncio
    async def test_resolve_use_local_then_resolve_again(self, make_engine) -> None:
        _, b = await self._diverge(make_engine)
        conflict_id = (await b.sync()).unresolved_conflicts[0]

        resolved = await b.resolve_conflict(conflict_id, ResolutionStrategy.use_local)
        again = await b.resolve_conflict(conflict_id, ResolutionStrategy.use_local)

        assert resolved.status == ResultStatus.success
        assert resolved.details["winner"] == "local"
        assert b.list_conflicts() == []
        assert b.records.get_by_id("patients", "p1").fields["name"] == "B edit"
        assert again.status == ResultStatus.failure
        assert again.error_kind == "invalid_resolution"

    @pytest.mark.asyncio
    async def test_resolve_with_manual_record(self, make_engine) -> None:
        _, b = await self._diverge(make_engine)
        conflict_id = (await b.sync()).unresolved_conflicts[0]

        result = await b.resolve_conflict(
            conflict_id, ResolutionStrategy.manual, record={"name": "Agreed name"}, notes="phoned patient"
        )

        assert result.ok
        record = b.records.get_by_id("patients", "p1")
        assert record.fields["name"] == "Agreed name"
        assert record.sync_status == RecordStatus.pending
        assert record.origin_id == "device-b"

    @pytest.mark.asyncio
    async def test_manual_without_record_fails(self, make_engine) -> None:
        _, b = await self._diverge(make_engine)
        conflict_id = (await b.sync()).unresolved_conflicts[0]

        result = await b.resolve_conflict(conflict_id, ResolutionStrategy.manual)

        assert result.error_kind == "invalid_resolution"
        assert len(b.list_conflicts()) == 1


class TestReconcile:

    def test_decision(self) -> None:
        t = datetime(2025, 1, 1, tzinfo=timezone.utc)

        assert reconcile_decision(None, None) == ReconcileAction.backup
        assert reconcile_decision(t, None) == ReconcileAction.backup
        assert reconcile_decision(None, t) == ReconcileAction.restore
        assert reconcile_decision(t, t + timedelta(seconds=1)) == ReconcileAction.restore
        assert reconcile_decision(t + timedelta(seconds=1), t) == ReconcileAction.backup

    def test_decision_ignores_sub_millisecond_difference(self) -> None:
        t = datetime(2025, 1, 1, tzinfo=timezone.utc)

        assert reconcile_decision(t, t + timedelta(microseconds=400)) == ReconcileAction.backup

    @pytest.mark.asyncio
    async def test_backup_then_restore_then_backup(self, make_engine) -> None:
        a, b = make_engine("device-a"), make_engine("device-b")
        _seed(a, "p1")

        first = await a.reconcile()
        second = await b.reconcile()
        third = await b.reconcile()

        assert first.details["action"] == "backup"
        assert second.details["action"] == "restore"
        assert second.counts["inserted"] == 1
        assert third.details["action"] == "backup"
        assert b.last_save_time() is not None


class TestOperationControl:
    """Mutual exclusion, cancellation and progress reporting."""

    @pytest.mark.asyncio
    async def test_second_operation_rejected_while_busy(self, make_engine, remote_dir) -> None:
        gate = threading.Event()
        a = make_engine("device-a")
        _seed(a, "p1")
        await a.backup()
        b = make_engine("device-b", remote=GatedTransport(remote_dir, gate))

        running = asyncio.create_task(b.restore())
        await asyncio.sleep(0.05)
        rejected = await b.backup()
        gate.set()
        finished = await running

        assert b.state == EngineStatus.idle
        assert rejected.status == ResultStatus.failure
        assert rejected.error_kind == "already_in_progress"
        assert rejected.error_message == "Sync in progress"
        assert finished.ok

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_remote_call(self, make_engine, remote_dir) -> None:
        gate = threading.Event()
        a = make_engine("device-a")
        _seed(a, "p1")
        await a.backup()
        b = make_engine("device-b", remote=GatedTransport(remote_dir, gate))

        running = asyncio.create_task(b.restore())
        await asyncio.sleep(0.05)
        assert b.cancel()
        gate.set()
        result = await running

        assert result.status == ResultStatus.cancelled
        assert not result.ok
        assert b.records.all_records("patients") == []
        assert not b.cancel()

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_completes(self, make_engine) -> None:
        a = make_engine("device-a")
        _seed(a, "p1")
        seen = []
        unsubscribe = a.add_progress_listener(seen.append)

        await a.backup()
        unsubscribe()
        await a.backup()

        fractions = [p.fraction for p in seen]
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0
        assert seen[-1].step == "Complete"
        assert len([p for p in seen if p.fraction == 1.0]) == 1

    @pytest.mark.asyncio
    async def test_failure_notifies_listeners(self, make_engine) -> None:
        b = make_engine("device-b")
        steps = []
        b.add_progress_listener(lambda p: steps.append(p.step))

        await b.restore()

        assert steps[-1].startswith("failure:")
        assert b.state == EngineStatus.idle


class TestRetentionAndCatalog:

    @pytest.mark.asyncio
    async def test_retention_failure_does_not_fail_backup(self, make_engine, remote_dir) -> None:
        a = make_engine(
            "device-a",
            remote=ReadOnlyTransport(remote_dir),
            retention=RetentionPolicy(max_daily=0, max_monthly=0, max_yearly=0),
        )
        _seed(a, "p1")

        result = await a.backup()

        assert result.status == ResultStatus.success
        assert "pruned" not in result.counts
        assert len(await a.list_backups()) == 1

    def test_plan_cleanup_applies_policy_per_kind(self, make_engine) -> None:
        a = make_engine("device-a")
        now = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)
        backups = [backup_name(TENANT, now - timedelta(days=d)) for d in (0, 1)]
        uploads = [sync_name(TENANT, "patients", now - timedelta(days=d)) for d in (2, 3)]
        descriptors = [describe(n, n, 10) for n in backups + uploads]

        plan = a.plan_cleanup(descriptors, RetentionPolicy(max_daily=1, max_monthly=0, max_yearly=0), now=now)

        assert sorted(d.name for d in plan) == sorted([backups[1], uploads[1]])

    @pytest.mark.asyncio
    async def test_cleanup_backups(self, make_engine) -> None:
        a = make_engine("device-a")
        _seed(a, "p1")
        await a.backup()
        await a.backup()

        result = await a.cleanup_backups(RetentionPolicy(max_daily=0, max_monthly=0, max_yearly=0))

        assert result.status == ResultStatus.success
        assert result.operation == SyncOperation.cleanup
        assert result.counts["deleted"] == 2
        assert len(result.details["deleted"]) == 2
        assert await a.list_backups() == []

    @pytest.mark.asyncio
    async def test_dry_run_plans_exactly_what_cleanup_deletes(self, make_engine, transport) -> None:
        a = make_engine("device-a")
        _seed(a, "p1")
        await a.sync()
        await a.backup()
        await a.backup()
        policy = RetentionPolicy(max_daily=0, max_monthly=0, max_yearly=0)

        preview = await a.cleanup_backups(policy, dry_run=True)
        assert preview.details["deleted"] == []
        assert len(transport.list()) == 3

        result = await a.cleanup_backups(policy)

        assert sorted(result.details["deleted"]) == sorted(preview.details["planned"])
        assert preview.details["total"] == 3
        assert any(name.endswith(".sync.enc") for name in preview.details["planned_names"])
        assert transport.list() == []

    @pytest.mark.asyncio
    async def test_cleanup_offline_returns_failure(self, make_engine, remote_dir) -> None:
        a = make_engine("device-a", remote=OfflineTransport(remote_dir))

        result = await a.cleanup_backups()

        assert result.status == ResultStatus.failure
        assert result.error_category == "network"
        assert result.error_kind == "no_connectivity"
        assert a.state == EngineStatus.idle

    @pytest.mark.asyncio
    async def test_cleanup_rejected_during_restore(self, make_engine, remote_dir) -> None:
        gate = threading.Event()
        a = make_engine("device-a")
        _seed(a, "p1")
        await a.backup()
        b = make_engine(
            "device-b",
            remote=GatedTransport(remote_dir, gate),
            retention=RetentionPolicy(max_daily=0, max_monthly=0, max_yearly=0),
        )

        running = asyncio.create_task(b.restore())
        await asyncio.sleep(0.05)
        rejected = await b.cleanup_backups()
        gate.set()
        restored = await running

        assert rejected.error_kind == "already_in_progress"
        assert restored.ok
        assert len(await a.list_backups()) == 1

    @pytest.mark.asyncio
    async def test_backup_statistics(self, make_engine) -> None:
        a = make_engine("device-a")
        _seed(a, "p1")
        await a.backup()

        stats = await a.backup_statistics()

        assert stats["count"] == 1
        assert stats["total_size"] > 0


class TestAutomation:

    @pytest.mark.asyncio
    async def test_debounced_auto_backup_runs_once(self, make_engine) -> None:
        a = make_engine("device-a", auto_backup_delay=0.05)
        _seed(a, "p1")

        for _ in range(3):
            a.schedule_auto_backup()
        for _ in range(100):
            await asyncio.sleep(0.05)
            if not a.status()["auto_backup_pending"] and a.last_result is not None:
                break

        assert len(await a.list_backups()) == 1
        await a.stop_auto_sync()

    @pytest.mark.asyncio
    async def test_start_and_stop_auto_sync(self, make_engine) -> None:
        a = make_engine("device-a")

        await a.start_auto_sync()
        assert a.status()["auto_sync_running"]
        await a.stop_auto_sync()
        assert not a.status()["auto_sync_running"]

    @pytest.mark.asyncio
    async def test_reconnect_triggers_sync(self, make_engine) -> None:
        a = make_engine("device-a")
        _seed(a, "p1")

        assert await a.set_online(False) is None
        result = await a.set_online(True)

        assert result.counts["uploaded"] == 1
        assert a.status()["online"] is True

    def test_status_snapshot(self, make_engine) -> None:
        a = make_engine("device-a")

        status = a.status()

        assert status["tenant_id"] == TENANT
        assert status["state"] == "idle"
        assert status["operation"] is None
        assert status["pending_conflicts"] == 0
        assert status["needs_key_rotation"] is True
        assert status["circuit"]["state"] == "closed"
        assert status["tables"] == ["patients", "visits", "payments"]
