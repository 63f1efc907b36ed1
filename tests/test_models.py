"""Tests for snapshot integrity, records and results."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clinicsync.sync.errors import (
    AuthError, AuthErrorKind, IntegrityError, IntegrityErrorKind, OperationError, OperationErrorKind,
)
from clinicsync.sync.models import (
    Record, RecordStatus, ResultStatus, SyncOperation, SyncResult, SyncSnapshot,
)

TS = datetime(2025, 5, 5, 8, 0, tzinfo=timezone.utc)


def _snapshot() -> SyncSnapshot:
    return SyncSnapshot.create(
        "clinic-1", "device-a", {"patients": [{"id": "p1", "name": "A", "last_modified": 100}]}, timestamp=TS
    )


class TestSnapshot:

    def test_fresh_snapshot_validates(self) -> None:
        snapshot = _snapshot()

        assert snapshot.validate_integrity()
        assert snapshot.record_count() == 1

    def test_flipped_checksum_byte(self) -> None:
        snapshot = _snapshot()
        first = "0" if snapshot.checksum[0] != "0" else "1"
        tampered = snapshot.model_copy(update={"checksum": first + snapshot.checksum[1:]})

        assert not tampered.validate_integrity()

    def test_modified_rows_fail(self) -> None:
        data = _snapshot().to_dict()
        data["tables"]["patients"][0]["name"] = "Z"

        assert not SyncSnapshot.from_dict(data).validate_integrity()

    def test_dict_round_trip_keeps_checksum_valid(self) -> None:
        restored = SyncSnapshot.from_dict(_snapshot().to_dict())

        assert restored.validate_integrity()
        assert restored.timestamp == TS

    def test_missing_fields(self) -> None:
        with pytest.raises(IntegrityError) as exc:
            SyncSnapshot.from_dict({"tenant_id": "clinic-1"})
        assert exc.value.kind == IntegrityErrorKind.corrupted_data

    def test_newer_version_rejected(self) -> None:
        data = _snapshot().to_dict()
        data["version"] = 99

        with pytest.raises(IntegrityError) as exc:
            SyncSnapshot.from_dict(data)
        assert exc.value.kind == IntegrityErrorKind.version_mismatch

    def test_non_utc_clock_survives_round_trip(self) -> None:
        manila = timezone(timedelta(hours=8))
        snapshot = SyncSnapshot.create("clinic-1", "device-a", {}, timestamp=TS.astimezone(manila))

        restored = SyncSnapshot.from_dict(snapshot.to_dict())

        assert restored.validate_integrity()
        assert restored.timestamp == TS


class TestRecord:

    def test_from_flat_splits_reserved_fields(self) -> None:
        record = Record.from_flat({
            "id": 7, "name": "Ana", "last_modified": "2025-01-01T00:00:00Z", "sync_status": "synced",
        })

        assert record.id == "7"
        assert record.fields == {"name": "Ana"}
        assert record.last_modified == 1735689600000
        assert record.sync_status == RecordStatus.synced

    def test_unknown_status_falls_back(self) -> None:
        record = Record.from_flat({"id": "p1", "sync_status": "weird"}, RecordStatus.synced)

        assert record.sync_status == RecordStatus.synced

    def test_missing_id(self) -> None:
        with pytest.raises(IntegrityError):
            Record.from_flat({"name": "nobody"})


class TestSyncResult:

    def test_cancelled(self) -> None:
        result = SyncResult.from_error(
            SyncOperation.restore, OperationError(OperationErrorKind.cancelled), TS
        )

        assert result.status == ResultStatus.cancelled
        assert not result.ok

    def test_auth_requires_reauth(self) -> None:
        result = SyncResult.from_error(
            SyncOperation.backup, AuthError(AuthErrorKind.token_expired), TS, counts={"records": 3}
        )

        assert result.status == ResultStatus.failure
        assert result.requires_reauth
        assert result.error_category == "auth"
        assert result.counts == {"records": 3}

    def test_unexpected_exception(self) -> None:
        result = SyncResult.from_error(SyncOperation.sync, RuntimeError("boom"), TS)

        assert result.error_category == "unexpected"
        assert result.error_kind == "RuntimeError"
        assert result.error_message == "boom"
