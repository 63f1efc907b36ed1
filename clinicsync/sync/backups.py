"""
Backup object naming and catalog helpers.

  {tenant}_{timestamp}.enc                full snapshot (backup)
  {tenant}_{timestamp}.{table}.sync.enc   per-table change upload

``timestamp`` is ISO-8601 UTC with ':' replaced by '-', microsecond
precision, so names sort chronologically and never collide on one device.
"""

import re
from datetime import datetime
from typing import Iterable, Optional

from clinicsync.sync.clock import ensure_utc, filename_timestamp, parse_filename_timestamp
from clinicsync.sync.models import BackupDescriptor, BackupKind

BACKUP_SUFFIX = ".enc"

_NAME = re.compile(
    r"^(?P<tenant>.+)_(?P<ts>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}(?:\.\d+)?(?:[+-]\d{2}-\d{2}|Z)?)"
    r"(?:\.(?P<table>[^./]+)\.sync)?\.enc$"
)


def backup_name(tenant_id: str, timestamp: datetime) -> str:
    return f"{tenant_id}_{filename_timestamp(timestamp)}{BACKUP_SUFFIX}"


def sync_name(tenant_id: str, table_name: str, timestamp: datetime) -> str:
    return f"{tenant_id}_{filename_timestamp(timestamp)}.{table_name}.sync{BACKUP_SUFFIX}"


def parse_name(name: str) -> Optional[dict]:
    """Split an object name into tenant, timestamp, kind and table. None if foreign."""
    m = _NAME.match(name.rsplit("/", 1)[-1])
    if not m:
        return None
    created_at = parse_filename_timestamp(m["ts"])
    if created_at is None:
        return None
    return {
        "tenant_id": m["tenant"],
        "created_at": created_at,
        "kind": BackupKind.sync if m["table"] else BackupKind.backup,
        "table_name": m["table"],
    }


def describe(
    object_id: str,
    name: str,
    size: int = 0,
) -> Optional[BackupDescriptor]:
    """Descriptor for a stored object, or None when the name is not ours."""
    parsed = parse_name(name)
    if parsed is None:
        return None
    return BackupDescriptor(
        id=object_id,
        name=name.rsplit("/", 1)[-1],
        created_at=parsed["created_at"],
        size=size,
        tenant_id=parsed["tenant_id"],
        kind=parsed["kind"],
        table_name=parsed["table_name"],
    )


def filter_backups(
    descriptors: Iterable[BackupDescriptor],
    tenant_id: str,
    kind: Optional[BackupKind] = BackupKind.backup,
) -> list[BackupDescriptor]:
    """Descriptors for one tenant (and kind), newest first."""
    selected = [
        d for d in descriptors
        if d.tenant_id == tenant_id and (kind is None or d.kind == kind)
    ]
    return sorted(selected, key=lambda d: (ensure_utc(d.created_at), d.name), reverse=True)


def latest_backup(descriptors: Iterable[BackupDescriptor], tenant_id: str) -> Optional[BackupDescriptor]:
    backups = filter_backups(descriptors, tenant_id)
    return backups[0] if backups else None


def backup_statistics(descriptors: Iterable[BackupDescriptor]) -> dict:
    items = list(descriptors)
    if not items:
        return {"count": 0, "total_size": 0, "oldest": None, "newest": None}
    ordered = sorted(items, key=lambda d: ensure_utc(d.created_at))
    return {
        "count": len(items),
        "total_size": sum(d.size for d in items),
        "oldest": ordered[0].created_at.isoformat(),
        "newest": ordered[-1].created_at.isoformat(),
    }
