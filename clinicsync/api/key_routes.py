"""
Key management REST API. Responses never contain key bytes.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from clinicsync.api.sync_routes import get_engine, http_status
from clinicsync.sync.engine import SyncEngine
from clinicsync.sync.errors import SyncError
from clinicsync.sync.models import EncryptionKey

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/keys", tags=["keys"])


# ── Request / Response models ──────────────────────────────────

class RotateResponse(BaseModel):
    key_id: str
    previous_key_id: Optional[str] = None


class KeyStatusResponse(BaseModel):
    tenant_id: str
    active_key_id: Optional[str] = None
    expires_at: Optional[str] = None
    needs_rotation: bool
    key_count: int
    history_limit: int


# ── Endpoints ──────────────────────────────────────────────────

@router.get("", response_model=list[EncryptionKey])
def list_keys(engine: SyncEngine = Depends(get_engine)):
    """Key metadata for the tenant, newest first."""
    return _guarded(lambda: engine.keys.list_keys(engine.tenant_id))


@router.post("/rotate", response_model=RotateResponse)
def rotate_key(engine: SyncEngine = Depends(get_engine)):
    """Create a new active key; the previous one stays available for decryption."""
    def rotate():
        previous = engine.keys.get_active_key(engine.tenant_id)
        key_id = engine.keys.rotate_key(engine.tenant_id)
        return RotateResponse(key_id=key_id, previous_key_id=previous.key_id if previous else None)

    return _guarded(rotate)


@router.get("/export")
def export_keys(engine: SyncEngine = Depends(get_engine)):
    return _guarded(lambda: engine.keys.export_key_metadata(engine.tenant_id))


@router.get("/status", response_model=KeyStatusResponse)
def key_status(engine: SyncEngine = Depends(get_engine)):
    def status():
        active = engine.keys.get_active_key(engine.tenant_id)
        return KeyStatusResponse(
            tenant_id=engine.tenant_id,
            active_key_id=active.key_id if active else None,
            expires_at=active.metadata.expires_at.isoformat() if active else None,
            needs_rotation=engine.keys.needs_key_rotation(engine.tenant_id),
            key_count=len(engine.keys.list_keys(engine.tenant_id)),
            history_limit=engine.keys.history_limit,
        )

    return _guarded(status)


def _guarded(func):
    try:
        return func()
    except SyncError as e:
        logger.error("Key operation failed: %s", e)
        raise HTTPException(status_code=http_status(e.category, e.kind.value), detail=e.to_dict())
