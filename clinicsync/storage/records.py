"""
Record store: the engine's only view of the local database.

Every method is its own short transaction; the engine never holds a
session across a remote call.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from clinicsync.storage.database import create_db_engine, get_db, init_db, make_session_factory
from clinicsync.storage.models import ConflictRow, SyncMetadataRow, SyncRecordRow
from clinicsync.sync.clock import ensure_utc
from clinicsync.sync.errors import StorageError, StorageErrorKind
from clinicsync.sync.models import (
    ConflictKind, Record, RecordStatus, SyncConflict, SyncMetadata,
)

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Narrow record-access contract consumed by the sync engine."""

    @abstractmethod
    def changed_since(self, table: str, since: int) -> list[Record]:
        """Unsynced local records modified after ``since`` (epoch ms)."""

    @abstractmethod
    def get_by_id(self, table: str, record_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    def insert(self, table: str, record: Record) -> None:
        ...

    @abstractmethod
    def update(self, table: str, record_id: str, record: Record) -> None:
        ...

    @abstractmethod
    def mark_synced(self, table: str, uploaded: Mapping[str, int]) -> int:
        """Mark records synced, given ``{record_id: last_modified}`` as uploaded.

        Rows whose ``last_modified`` no longer matches were edited meanwhile
        and keep their pending status.
        """

    @abstractmethod
    def get_sync_metadata(self, table: str) -> Optional[SyncMetadata]:
        ...

    @abstractmethod
    def set_sync_metadata(self, table: str, metadata: SyncMetadata) -> None:
        ...

    @abstractmethod
    def all_records(self, table: str) -> list[Record]:
        ...

    @abstractmethod
    def pending_count(self, table: str) -> int:
        ...

    @abstractmethod
    def save_conflict(self, conflict: SyncConflict) -> None:
        """Persist an unresolved conflict, replacing any older one for the same record."""

    @abstractmethod
    def get_conflict(self, conflict_id: str) -> Optional[SyncConflict]:
        ...

    @abstractmethod
    def list_conflicts(self, table: Optional[str] = None) -> list[SyncConflict]:
        ...

    @abstractmethod
    def delete_conflict(self, conflict_id: str) -> None:
        ...


class SqlRecordStore(RecordStore):
    """RecordStore backed by SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "SqlRecordStore":
        engine = create_db_engine(url)
        init_db(engine)
        return cls(make_session_factory(engine))

    # ── Records ─────────────────────────────────────────────────

    def changed_since(self, table: str, since: int) -> list[Record]:
        with self._session() as db:
            rows = (
                db.query(SyncRecordRow)
                .filter(
                    SyncRecordRow.table_name == table,
                    SyncRecordRow.sync_status == RecordStatus.pending,
                    SyncRecordRow.last_modified > since,
                )
                .order_by(SyncRecordRow.last_modified)
                .all()
            )
            return [self._to_record(r) for r in rows]

    def get_by_id(self, table: str, record_id: str) -> Optional[Record]:
        with self._session() as db:
            row = self._find(db, table, record_id)
            return self._to_record(row) if row else None

    def insert(self, table: str, record: Record) -> None:
        with self._session() as db:
            if self._find(db, table, record.id) is not None:
                raise StorageError(
                    StorageErrorKind.access_denied,
                    f"Record {table}/{record.id} already exists",
                    {"table": table, "record_id": record.id},
                )
            db.add(SyncRecordRow(
                table_name=table,
                record_id=record.id,
                fields=json.dumps(record.fields),
                last_modified=record.last_modified,
                sync_status=record.sync_status,
                origin_id=record.origin_id,
            ))

    def update(self, table: str, record_id: str, record: Record) -> None:
        with self._session() as db:
            row = self._find(db, table, record_id)
            if row is None:
                raise StorageError(
                    StorageErrorKind.not_found,
                    f"Record {table}/{record_id} not found",
                    {"table": table, "record_id": record_id},
                )
            row.fields = json.dumps(record.fields)
            row.last_modified = record.last_modified
            row.sync_status = record.sync_status
            row.origin_id = record.origin_id

    def mark_synced(self, table: str, uploaded: Mapping[str, int]) -> int:
        if not uploaded:
            return 0
        count = 0
        with self._session() as db:
            for record_id, last_modified in uploaded.items():
                # A row edited after it was read for upload stays pending.
                count += (
                    db.query(SyncRecordRow)
                    .filter(
                        SyncRecordRow.table_name == table,
                        SyncRecordRow.record_id == record_id,
                        SyncRecordRow.last_modified == last_modified,
                    )
                    .update({SyncRecordRow.sync_status: RecordStatus.synced}, synchronize_session=False)
                )
        logger.debug("Marked %d of %d %s records synced", count, len(uploaded), table)
        return count

    def all_records(self, table: str) -> list[Record]:
        with self._session() as db:
            rows = (
                db.query(SyncRecordRow)
                .filter(SyncRecordRow.table_name == table)
                .order_by(SyncRecordRow.record_id)
                .all()
            )
            return [self._to_record(r) for r in rows]

    def pending_count(self, table: str) -> int:
        with self._session() as db:
            return (
                db.query(SyncRecordRow)
                .filter(
                    SyncRecordRow.table_name == table,
                    SyncRecordRow.sync_status == RecordStatus.pending,
                )
                .count()
            )

    # ── Metadata ────────────────────────────────────────────────

    def get_sync_metadata(self, table: str) -> Optional[SyncMetadata]:
        with self._session() as db:
            row = db.get(SyncMetadataRow, table)
            if row is None:
                return None
            return SyncMetadata(
                table_name=row.table_name,
                last_sync_timestamp=row.last_sync_timestamp,
                last_backup_timestamp=row.last_backup_timestamp,
                pending_change_count=row.pending_change_count or 0,
                last_origin_id=row.last_origin_id,
            )

    def set_sync_metadata(self, table: str, metadata: SyncMetadata) -> None:
        with self._session() as db:
            row = db.get(SyncMetadataRow, table)
            if row is None:
                row = SyncMetadataRow(table_name=table)
                db.add(row)
            row.last_sync_timestamp = metadata.last_sync_timestamp
            row.last_backup_timestamp = metadata.last_backup_timestamp
            row.pending_change_count = metadata.pending_change_count
            row.last_origin_id = metadata.last_origin_id

    # ── Conflicts ───────────────────────────────────────────────

    def save_conflict(self, conflict: SyncConflict) -> None:
        with self._session() as db:
            stale = (
                db.query(ConflictRow)
                .filter(
                    ConflictRow.table_name == conflict.table_name,
                    ConflictRow.record_id == conflict.record_id,
                )
                .all()
            )
            for row in stale:
                logger.info("Replacing conflict %s for %s/%s", row.id, row.table_name, row.record_id)
                db.delete(row)
            db.add(ConflictRow(
                id=conflict.id,
                table_name=conflict.table_name,
                record_id=conflict.record_id,
                local_record=json.dumps(conflict.local_record),
                remote_record=json.dumps(conflict.remote_record),
                kind=conflict.kind.value,
                detected_at=conflict.detected_at,
            ))

    def get_conflict(self, conflict_id: str) -> Optional[SyncConflict]:
        with self._session() as db:
            row = db.get(ConflictRow, conflict_id)
            return self._to_conflict(row) if row else None

    def list_conflicts(self, table: Optional[str] = None) -> list[SyncConflict]:
        with self._session() as db:
            query = db.query(ConflictRow).order_by(ConflictRow.detected_at)
            if table:
                query = query.filter(ConflictRow.table_name == table)
            return [self._to_conflict(r) for r in query.all()]

    def delete_conflict(self, conflict_id: str) -> None:
        with self._session() as db:
            row = db.get(ConflictRow, conflict_id)
            if row is not None:
                db.delete(row)

    # ── Internal ────────────────────────────────────────────────

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with get_db(self._session_factory) as db:
                yield db
        except SQLAlchemyError as e:
            raise StorageError(StorageErrorKind.access_denied, f"Database error: {e}") from e

    @staticmethod
    def _find(db, table: str, record_id: str) -> Optional[SyncRecordRow]:
        return (
            db.query(SyncRecordRow)
            .filter(SyncRecordRow.table_name == table, SyncRecordRow.record_id == record_id)
            .first()
        )

    @staticmethod
    def _to_record(row: SyncRecordRow) -> Record:
        return Record(
            id=row.record_id,
            fields=json.loads(row.fields or "{}"),
            last_modified=row.last_modified or 0,
            sync_status=row.sync_status,
            origin_id=row.origin_id,
        )

    @staticmethod
    def _to_conflict(row: ConflictRow) -> SyncConflict:
        return SyncConflict(
            id=row.id,
            table_name=row.table_name,
            record_id=row.record_id,
            local_record=json.loads(row.local_record),
            remote_record=json.loads(row.remote_record),
            detected_at=ensure_utc(row.detected_at),
            kind=ConflictKind(row.kind),
        )
