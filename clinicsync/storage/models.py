"""
SQLAlchemy models for the local record store.

- SyncRecordRow: one row of a sync-enabled table, fields kept as JSON
- SyncMetadataRow: per-table sync cursors
- ConflictRow: conflicts awaiting manual resolution
"""

from sqlalchemy import (
    BigInteger, Column, DateTime, Index, Integer, String, Text,
    UniqueConstraint, Enum as SAEnum,
)
from sqlalchemy.sql import func
import uuid

from clinicsync.storage.database import Base
from clinicsync.sync.models import RecordStatus


def _gen_id() -> str:
    return str(uuid.uuid4())


class SyncRecordRow(Base):
    __tablename__ = "sync_records"
    __table_args__ = (
        UniqueConstraint("table_name", "record_id", name="uq_records_table_record"),
        Index("ix_records_table_status_modified", "table_name", "sync_status", "last_modified"),
    )

    id = Column(String, primary_key=True, default=_gen_id)
    table_name = Column(String, nullable=False)
    record_id = Column(String, nullable=False)
    fields = Column(Text, nullable=False, default="{}")      # JSON: {"field": value}, insertion ordered
    last_modified = Column(BigInteger, nullable=False, default=0)  # epoch ms
    sync_status = Column(SAEnum(RecordStatus), nullable=False, default=RecordStatus.pending)
    origin_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SyncMetadataRow(Base):
    __tablename__ = "sync_metadata"

    table_name = Column(String, primary_key=True)
    last_sync_timestamp = Column(BigInteger, nullable=True)
    last_backup_timestamp = Column(BigInteger, nullable=True)
    pending_change_count = Column(Integer, nullable=False, default=0)
    last_origin_id = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ConflictRow(Base):
    __tablename__ = "sync_conflicts"
    __table_args__ = (
        Index("ix_conflicts_table_record", "table_name", "record_id"),
    )

    id = Column(String, primary_key=True, default=_gen_id)
    table_name = Column(String, nullable=False)
    record_id = Column(String, nullable=False)
    local_record = Column(Text, nullable=False)    # JSON
    remote_record = Column(Text, nullable=False)   # JSON
    kind = Column(String, nullable=False)
    detected_at = Column(DateTime(timezone=True), nullable=False)
