"""Tests for the SQLAlchemy-backed record store."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from clinicsync.storage.records import SqlRecordStore
from clinicsync.sync.errors import StorageError, StorageErrorKind
from clinicsync.sync.models import RecordStatus, SyncConflict, SyncMetadata

from conftest import make_record


class TestRecords:

    def test_insert_and_get(self, record_store: SqlRecordStore) -> None:
        record_store.insert("patients", make_record("p1", 1_000, name="Ana", age=41))

        got = record_store.get_by_id("patients", "p1")

        assert got.fields == {"name": "Ana", "age": 41}
        assert got.last_modified == 1_000
        assert got.sync_status == RecordStatus.pending
        assert got.origin_id == "device-a"
        assert record_store.get_by_id("visits", "p1") is None

    def test_duplicate_insert(self, record_store: SqlRecordStore) -> None:
        record_store.insert("patients", make_record("p1", 1_000))

        with pytest.raises(StorageError):
            record_store.insert("patients", make_record("p1", 2_000))

    def test_same_id_in_different_tables(self, record_store: SqlRecordStore) -> None:
        record_store.insert("patients", make_record("x", 1_000))
        record_store.insert("visits", make_record("x", 1_000))

        assert len(record_store.all_records("patients")) == 1
        assert len(record_store.all_records("visits")) == 1

    def test_update(self, record_store: SqlRecordStore) -> None:
        record_store.insert("patients", make_record("p1", 1_000, name="Ana"))

        record_store.update("patients", "p1", make_record("p1", 2_000, status=RecordStatus.synced, name="Ana R."))

        got = record_store.get_by_id("patients", "p1")
        assert got.fields["name"] == "Ana R."
        assert got.sync_status == RecordStatus.synced

    def test_update_missing(self, record_store: SqlRecordStore) -> None:
        with pytest.raises(StorageError) as exc:
            record_store.update("patients", "nope", make_record("nope", 1))
        assert exc.value.kind == StorageErrorKind.not_found

    def test_changed_since_only_pending_and_newer(self, record_store: SqlRecordStore) -> None:
        record_store.insert("patients", make_record("old", 500))
        record_store.insert("patients", make_record("new", 1_500))
        record_store.insert("patients", make_record("synced", 2_000, status=RecordStatus.synced))

        changed = record_store.changed_since("patients", 1_000)

        assert [r.id for r in changed] == ["new"]
        assert [r.id for r in record_store.changed_since("patients", 0)] == ["old", "new"]

    def test_mark_synced(self, record_store: SqlRecordStore) -> None:
        for rid in ("a", "b", "c"):
            record_store.insert("patients", make_record(rid, 1_000))

        assert record_store.mark_synced("patients", {"a": 1_000, "b": 1_000}) == 2
        assert record_store.mark_synced("patients", {}) == 0
        assert record_store.pending_count("patients") == 1

    def test_mark_synced_skips_rows_edited_after_read(self, record_store: SqlRecordStore) -> None:
        record_store.insert("patients", make_record("a", 1_000, name="Ana"))
        uploaded = {r.id: r.last_modified for r in record_store.changed_since("patients", 0)}
        record_store.update("patients", "a", make_record("a", 2_000, name="Ana Reyes"))

        assert record_store.mark_synced("patients", uploaded) == 0
        got = record_store.get_by_id("patients", "a")
        assert got.sync_status == RecordStatus.pending
        assert got.fields["name"] == "Ana Reyes"
        assert record_store.pending_count("patients") == 1


class TestMetadata:

    def test_missing_metadata(self, record_store: SqlRecordStore) -> None:
        assert record_store.get_sync_metadata("patients") is None

    def test_set_and_overwrite(self, record_store: SqlRecordStore) -> None:
        record_store.set_sync_metadata("patients", SyncMetadata(table_name="patients", last_sync_timestamp=10))
        record_store.set_sync_metadata(
            "patients",
            SyncMetadata(table_name="patients", last_sync_timestamp=20, last_backup_timestamp=15,
                         pending_change_count=3, last_origin_id="device-a"),
        )

        meta = record_store.get_sync_metadata("patients")
        assert meta.last_sync_timestamp == 20
        assert meta.last_backup_timestamp == 15
        assert meta.pending_change_count == 3
        assert meta.last_origin_id == "device-a"


class TestConflicts:

    def _conflict(self, record_id="p1", table="patients", minute=0) -> SyncConflict:
        return SyncConflict(
            table_name=table,
            record_id=record_id,
            local_record={"id": record_id, "name": "Ana"},
            remote_record={"id": record_id, "name": "Ana R."},
            detected_at=datetime(2025, 1, 1, 9, minute, tzinfo=timezone.utc),
        )

    def test_save_and_get(self, record_store: SqlRecordStore) -> None:
        conflict = self._conflict()
        record_store.save_conflict(conflict)

        got = record_store.get_conflict(conflict.id)

        assert got == conflict

    def test_newer_conflict_replaces_older_for_same_record(self, record_store: SqlRecordStore) -> None:
        first, second = self._conflict(minute=0), self._conflict(minute=5)
        record_store.save_conflict(first)
        record_store.save_conflict(second)

        assert [c.id for c in record_store.list_conflicts()] == [second.id]

    def test_list_by_table_and_delete(self, record_store: SqlRecordStore) -> None:
        a = self._conflict("p1", "patients", 0)
        b = self._conflict("v1", "visits", 1)
        record_store.save_conflict(a)
        record_store.save_conflict(b)

        assert [c.id for c in record_store.list_conflicts()] == [a.id, b.id]
        assert [c.id for c in record_store.list_conflicts("visits")] == [b.id]

        record_store.delete_conflict(a.id)
        record_store.delete_conflict("missing")
        assert record_store.get_conflict(a.id) is None
