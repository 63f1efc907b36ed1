"""
Per-tenant key lifecycle: derivation, rotation, expiry, bounded history.

Secret storage layout (all values opaque bytes):
  keys/{key_id}/material   32 raw key bytes
  keys/{key_id}/meta       EncryptionKey JSON
  tenants/{tenant}/index   JSON list of key ids
  tenants/{tenant}/active  id of the active key

Rotation writes the new key completely, then flips the active pointer,
then demotes the previous key. A reader following the pointer therefore
never sees a half-written key.
"""

import base64
import json
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterator, Optional

from pydantic import ValidationError

from clinicsync.config.settings import settings
from clinicsync.storage.secrets import SecretStorage
from clinicsync.sync.clock import Clock, utc_now
from clinicsync.sync.encryption import KEY_LEN, EncryptionCodec
from clinicsync.sync.errors import KeyStorageError, StorageErrorKind
from clinicsync.sync.models import EncryptionKey

logger = logging.getLogger(__name__)

DERIVATION_METHOD = "PBKDF2-SHA256"
LEGACY_TENANT_KEY_ID = "legacy-tenant"
LEGACY_ORIGIN_KEY_PREFIX = "legacy-origin"


@dataclass(frozen=True)
class KeyMaterial:
    """Key metadata together with the raw key bytes."""

    metadata: EncryptionKey
    key: bytes = field(repr=False)

    @property
    def key_id(self) -> str:
        return self.metadata.key_id


class KeyManager:
    """Derives, stores, rotates and validates per-tenant symmetric keys."""

    def __init__(
        self,
        storage: SecretStorage,
        codec: EncryptionCodec,
        rotation_days: Optional[int] = None,
        history_limit: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        self._storage = storage
        self._codec = codec
        self._rotation = timedelta(days=rotation_days or settings.key_rotation_days)
        self._history_limit = history_limit or settings.key_history_limit
        self._clock = clock
        self._lock = threading.RLock()

    @property
    def history_limit(self) -> int:
        return self._history_limit

    # ── Derive / Rotate ─────────────────────────────────────────

    def derive_and_store_key(self, tenant_id: str, force_rotation: bool = False) -> str:
        """Return the active key id, creating a new key when missing, expired or forced."""
        with self._lock:
            active = self.get_active_key(tenant_id)
            if (
                active is not None
                and not force_rotation
                and not active.metadata.is_expired(self._clock())
            ):
                return active.key_id

            key_id = self._create_key(tenant_id, previous=active)
            self._enforce_history(tenant_id)
            return key_id

    def rotate_key(self, tenant_id: str) -> str:
        key_id = self.derive_and_store_key(tenant_id, force_rotation=True)
        logger.info("Rotated key for tenant %s (active=%s)", tenant_id, key_id)
        return key_id

    def needs_key_rotation(self, tenant_id: str) -> bool:
        active = self.get_active_key(tenant_id)
        return active is None or active.metadata.is_expired(self._clock())

    # ── Lookup ──────────────────────────────────────────────────

    def get_key(self, key_id: str) -> Optional[KeyMaterial]:
        material = self._read(self._material_key(key_id))
        if material is None:
            return None
        meta = self._read_meta(key_id)
        if meta is None:
            return None
        return KeyMaterial(metadata=meta, key=material)

    def get_active_key(self, tenant_id: str) -> Optional[KeyMaterial]:
        active_id = self._active_id(tenant_id)
        if active_id is None:
            return None
        key = self.get_key(active_id)
        if key is None:
            logger.warning("Active key %s for tenant %s is missing", active_id, tenant_id)
            return None
        return KeyMaterial(metadata=key.metadata.model_copy(update={"is_active": True}), key=key.key)

    def list_keys(self, tenant_id: str) -> list[EncryptionKey]:
        """Key metadata, newest first. ``is_active`` follows the tenant's active pointer."""
        active_id = self._active_id(tenant_id)
        keys = []
        for position, key_id in enumerate(self._read_index(tenant_id)):
            meta = self._read_meta(key_id)
            if meta is None:
                continue
            keys.append((meta.created_at, position, meta.model_copy(update={"is_active": key_id == active_id})))
        keys.sort(key=lambda entry: entry[:2], reverse=True)
        return [meta for _, _, meta in keys]

    def validate_key(self, key_id: str) -> bool:
        try:
            material = self._read(self._material_key(key_id))
            meta = self._read_meta(key_id)
        except KeyStorageError:
            return False
        return material is not None and len(material) == KEY_LEN and meta is not None

    # ── Recovery / legacy ───────────────────────────────────────

    def rederive_key(self, key_id: str) -> bytes:
        """Recompute key bytes from the stored tenant id and salt."""
        meta = self._read_meta(key_id)
        if meta is None:
            raise KeyStorageError(StorageErrorKind.not_found, f"Unknown key: {key_id}")
        salt = base64.b64decode(meta.salt)
        return self._codec.derive_key(meta.tenant_id, salt, iterations=meta.iterations)

    def legacy_candidates(self, tenant_id: str, origin_id: Optional[str] = None) -> Iterator[tuple[str, bytes]]:
        """Fallback keys for payloads written before per-tenant key storage.

        Read-only: nothing is ever encrypted under these.
        """
        yield LEGACY_TENANT_KEY_ID, self._codec.derive_key(tenant_id, tenant_id.encode("utf-8"))
        if origin_id:
            yield (
                f"{LEGACY_ORIGIN_KEY_PREFIX}:{origin_id}",
                self._codec.derive_key(tenant_id, origin_id.encode("utf-8")),
            )

    def decryption_candidates(
        self,
        tenant_id: str,
        hint_key_id: Optional[str] = None,
        origin_id: Optional[str] = None,
        include_legacy: bool = True,
    ) -> Iterator[tuple[str, bytes]]:
        """Ordered (key_id, key) pairs to try: hinted, active, history, legacy."""
        if hint_key_id:
            hinted = self.get_key(hint_key_id)
            if hinted is not None:
                yield hinted.key_id, hinted.key
        active = self.get_active_key(tenant_id)
        if active is not None:
            yield active.key_id, active.key
        for meta in self.list_keys(tenant_id):
            key = self.get_key(meta.key_id)
            if key is not None:
                yield key.key_id, key.key
        if include_legacy:
            yield from self.legacy_candidates(tenant_id, origin_id)

    # ── Wipe / Export ───────────────────────────────────────────

    def delete_all_keys(self, tenant_id: str) -> int:
        with self._lock:
            deleted = 0
            for key_id in self._read_index(tenant_id):
                if self._read(self._material_key(key_id)) is not None:
                    deleted += 1
                self._delete_key(key_id)
            self._delete(self._index_key(tenant_id))
            self._delete(self._active_key(tenant_id))
            logger.info("Deleted %d keys for tenant %s", deleted, tenant_id)
            return deleted

    def export_key_metadata(self, tenant_id: str) -> dict:
        """Metadata for backup or audit. Never contains key bytes."""
        return {
            "tenant_id": tenant_id,
            "active_key_id": self._active_id(tenant_id),
            "keys": [k.model_dump(mode="json") for k in self.list_keys(tenant_id)],
            "exported_at": self._clock().isoformat(),
        }

    # ── Internal ────────────────────────────────────────────────

    def _create_key(self, tenant_id: str, previous: Optional[KeyMaterial]) -> str:
        now = self._clock()
        salt = self._codec.generate_salt()
        key = self._codec.derive_key(tenant_id, salt)
        key_id = f"{tenant_id}_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"
        meta = EncryptionKey(
            key_id=key_id,
            tenant_id=tenant_id,
            derivation_method=DERIVATION_METHOD,
            salt=base64.b64encode(salt).decode("ascii"),
            iterations=self._codec.iterations,
            created_at=now,
            expires_at=now + self._rotation,
            is_active=True,
        )

        self._write(self._material_key(key_id), key)
        self._write_meta(meta)
        index = self._read_index(tenant_id)
        index.append(key_id)
        self._write(self._index_key(tenant_id), json.dumps(index).encode("utf-8"))

        # Flip
        self._write(self._active_key(tenant_id), key_id.encode("utf-8"))

        if previous is not None:
            self._write_meta(previous.metadata.model_copy(update={"is_active": False}))

        logger.info(
            "Stored key %s for tenant %s (expires %s)",
            key_id, tenant_id, meta.expires_at.date().isoformat(),
        )
        return key_id

    def _enforce_history(self, tenant_id: str) -> None:
        keys = self.list_keys(tenant_id)
        excess = len(keys) - self._history_limit
        if excess <= 0:
            return
        inactive = [k for k in reversed(keys) if not k.is_active]
        doomed = [k.key_id for k in inactive[:excess]]
        for key_id in doomed:
            self._delete_key(key_id)
        index = [k for k in self._read_index(tenant_id) if k not in doomed]
        self._write(self._index_key(tenant_id), json.dumps(index).encode("utf-8"))
        logger.info("Pruned %d old keys for tenant %s", len(doomed), tenant_id)

    def _delete_key(self, key_id: str) -> None:
        self._delete(self._material_key(key_id))
        self._delete(self._meta_key(key_id))

    def _active_id(self, tenant_id: str) -> Optional[str]:
        raw = self._read(self._active_key(tenant_id))
        return raw.decode("utf-8") if raw else None

    def _read_index(self, tenant_id: str) -> list[str]:
        raw = self._read(self._index_key(tenant_id))
        if not raw:
            return []
        try:
            return list(json.loads(raw))
        except ValueError:
            raise KeyStorageError(
                StorageErrorKind.access_denied, f"Key index for tenant {tenant_id} is corrupt"
            )

    def _read_meta(self, key_id: str) -> Optional[EncryptionKey]:
        raw = self._read(self._meta_key(key_id))
        if raw is None:
            return None
        try:
            return EncryptionKey.model_validate_json(raw)
        except ValidationError:
            logger.warning("Unreadable metadata for key %s", key_id)
            return None

    def _write_meta(self, meta: EncryptionKey) -> None:
        self._write(self._meta_key(meta.key_id), meta.model_dump_json().encode("utf-8"))

    def _read(self, key: str) -> Optional[bytes]:
        try:
            return self._storage.read(key)
        except KeyStorageError:
            raise
        except OSError as e:
            raise KeyStorageError(StorageErrorKind.access_denied, f"Secret read failed: {e}")

    def _write(self, key: str, data: bytes) -> None:
        try:
            self._storage.write(key, data)
        except KeyStorageError:
            raise
        except OSError as e:
            raise KeyStorageError(StorageErrorKind.access_denied, f"Secret write failed: {e}")

    def _delete(self, key: str) -> None:
        try:
            self._storage.delete(key)
        except KeyStorageError:
            raise
        except OSError as e:
            raise KeyStorageError(StorageErrorKind.access_denied, f"Secret delete failed: {e}")

    @staticmethod
    def _material_key(key_id: str) -> str:
        return f"keys/{key_id}/material"

    @staticmethod
    def _meta_key(key_id: str) -> str:
        return f"keys/{key_id}/meta"

    @staticmethod
    def _index_key(tenant_id: str) -> str:
        return f"tenants/{tenant_id}/index"

    @staticmethod
    def _active_key(tenant_id: str) -> str:
        return f"tenants/{tenant_id}/active"
