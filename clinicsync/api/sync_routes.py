"""
Sync API routes.

GET    /api/sync/status            - Engine status
POST   /api/sync                   - Incremental sync (``?full=true`` for full)
POST   /api/sync/backup            - Encrypted full backup
POST   /api/sync/restore           - Restore latest or a given backup
POST   /api/sync/reconcile         - Restore if remote is newer, else back up
POST   /api/sync/cancel            - Cancel the running operation
GET    /api/sync/backups           - Remote backups for this tenant
GET    /api/sync/backups/stats     - Count, size and age of backups
POST   /api/sync/backups/cleanup   - Apply the retention policy (``?dry_run=true`` to preview)
GET    /api/sync/conflicts         - Pending manual conflicts
POST   /api/sync/conflicts/{id}    - Resolve a pending conflict
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from clinicsync.sync.engine import SyncEngine
from clinicsync.sync.models import (
    BackupDescriptor, ResolutionStrategy, ResultStatus, SyncConflict, SyncResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

# Failure results are returned as HTTP errors with the result as detail.
_STATUS_BY_CATEGORY = {
    "operation": 409,
    "conflict": 400,
    "integrity": 422,
    "auth": 401,
    "network": 503,
    "circuit": 503,
    "storage": 500,
    "key_storage": 500,
}


def get_engine(request: Request) -> SyncEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not configured")
    return engine


def http_status(category: Optional[str], kind: Optional[str]) -> int:
    if kind == "not_found":
        return 404
    if kind == "insufficient_space":
        return 507
    return _STATUS_BY_CATEGORY.get(category, 500)


def _checked(result: SyncResult) -> SyncResult:
    if result.status != ResultStatus.failure:
        return result
    raise HTTPException(
        status_code=http_status(result.error_category, result.error_kind),
        detail=result.model_dump(mode="json"),
    )


# ── Request/Response Models ─────────────────────────────────────────────

class RestoreRequest(BaseModel):
    backup_id: Optional[str] = None


class ResolveRequest(BaseModel):
    strategy: ResolutionStrategy
    record: Optional[dict[str, Any]] = None
    notes: Optional[str] = None


class CancelResponse(BaseModel):
    cancelled: bool


class BackupStats(BaseModel):
    count: int
    total_size: int
    oldest: Optional[str] = None
    newest: Optional[str] = None


# ── Routes ──────────────────────────────────────────────────────────────

@router.get("/status")
def get_status(engine: SyncEngine = Depends(get_engine)):
    """Current engine state, progress and last result."""
    return engine.status()


@router.post("", response_model=SyncResult)
async def trigger_sync(full: bool = False, engine: SyncEngine = Depends(get_engine)):
    """Upload local changes and pull the latest remote snapshot."""
    return _checked(await engine.sync(full=full))


@router.post("/backup", response_model=SyncResult)
async def trigger_backup(engine: SyncEngine = Depends(get_engine)):
    return _checked(await engine.backup())


@router.post("/restore", response_model=SyncResult)
async def trigger_restore(
    req: Optional[RestoreRequest] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """Restore the latest backup, or the one named by ``backup_id``."""
    return _checked(await engine.restore(req.backup_id if req else None))


@router.post("/reconcile", response_model=SyncResult)
async def trigger_reconcile(engine: SyncEngine = Depends(get_engine)):
    return _checked(await engine.reconcile())


@router.post("/cancel", response_model=CancelResponse)
def cancel(engine: SyncEngine = Depends(get_engine)):
    return CancelResponse(cancelled=engine.cancel())


@router.get("/backups", response_model=list[BackupDescriptor])
async def list_backups(engine: SyncEngine = Depends(get_engine)):
    return await engine.list_backups()


@router.get("/backups/stats", response_model=BackupStats)
async def backup_stats(engine: SyncEngine = Depends(get_engine)):
    return BackupStats(**await engine.backup_statistics())


@router.post("/backups/cleanup", response_model=SyncResult)
async def cleanup_backups(dry_run: bool = False, engine: SyncEngine = Depends(get_engine)):
    """Delete remote objects the retention policy no longer keeps (``?dry_run=true`` to preview)."""
    return _checked(await engine.cleanup_backups(dry_run=dry_run))


@router.get("/conflicts", response_model=list[SyncConflict])
def list_conflicts(table: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    return engine.list_conflicts(table)


@router.post("/conflicts/{conflict_id}", response_model=SyncResult)
async def resolve_conflict(
    conflict_id: str,
    req: ResolveRequest,
    engine: SyncEngine = Depends(get_engine),
):
    """Resolve a pending conflict with the given strategy."""
    result = await engine.resolve_conflict(conflict_id, req.strategy, req.record, req.notes)
    return _checked(result)
