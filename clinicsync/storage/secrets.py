"""
Secret storage for key material and key metadata.

The KeyManager only needs an opaque read/write/delete map. Two backends:

- InMemorySecretStorage: process-local, for tests and throwaway engines
- FileSecretStorage: JSON file replaced atomically on every write. When a
  passphrase is configured the whole entry map is sealed with AES-256-GCM
  under an Argon2id-derived key; the file then holds only the salt, nonce
  and ciphertext.
"""

import base64
import binascii
import errno
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from clinicsync.config.settings import settings
from clinicsync.sync.errors import KeyStorageError, StorageErrorKind

logger = logging.getLogger(__name__)

FILE_VERSION = 1
SEAL_AAD = b"clinicsync-secrets-v1"


class SecretStorage(ABC):
    """Opaque key/value store for secrets."""

    @abstractmethod
    def read(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is absent."""

    @abstractmethod
    def write(self, key: str, data: bytes) -> None:
        """Store bytes under key, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""


class InMemorySecretStorage(SecretStorage):
    def __init__(self):
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(data)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class FileSecretStorage(SecretStorage):
    """File-backed secret map, optionally sealed under a passphrase."""

    def __init__(
        self,
        path: Path,
        passphrase: Optional[str] = None,
        time_cost: Optional[int] = None,
        memory_cost: Optional[int] = None,
        parallelism: Optional[int] = None,
    ):
        self._path = Path(path)
        self._passphrase = passphrase
        self._time_cost = time_cost or settings.argon2_time_cost
        self._memory_cost = memory_cost or settings.argon2_memory_cost
        self._parallelism = parallelism or settings.argon2_parallelism
        self._lock = threading.Lock()
        self._entries: Optional[dict[str, str]] = None
        self._salt: Optional[bytes] = None
        self._seal_key: Optional[bytearray] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_sealed(self) -> bool:
        return self._passphrase is not None

    # ── Public API ──────────────────────────────────────────────

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            value = self._load().get(key)
        if value is None:
            return None
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise KeyStorageError(
                StorageErrorKind.access_denied,
                f"Secret entry {key!r} is corrupt",
                {"path": str(self._path)},
            )

    def write(self, key: str, data: bytes) -> None:
        with self._lock:
            entries = dict(self._load())
            entries[key] = base64.b64encode(bytes(data)).decode("ascii")
            self._flush(entries)
            self._entries = entries

    def delete(self, key: str) -> None:
        with self._lock:
            entries = self._load()
            if key not in entries:
                return
            entries = {k: v for k, v in entries.items() if k != key}
            self._flush(entries)
            self._entries = entries

    def close(self) -> None:
        """Forget cached entries and wipe the sealing key."""
        with self._lock:
            self._forget_key()
            self._entries = None

    # ── Internal ────────────────────────────────────────────────

    def _load(self) -> dict[str, str]:
        if self._entries is not None:
            return self._entries
        if not self._path.exists():
            self._entries = {}
            return self._entries
        try:
            doc = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise self._os_error(e)
        except ValueError:
            raise KeyStorageError(
                StorageErrorKind.access_denied,
                "Secret file is not valid JSON",
                {"path": str(self._path)},
            )

        if doc.get("sealed"):
            self._entries = self._unseal(doc)
        else:
            if self.is_sealed:
                logger.warning("Secret file %s is unsealed; it will be sealed on next write", self._path)
            self._entries = dict(doc.get("entries", {}))
        return self._entries

    def _flush(self, entries: dict[str, str]) -> None:
        if self.is_sealed:
            doc = self._seal(entries)
        else:
            doc = {"version": FILE_VERSION, "sealed": False, "entries": entries}
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(doc, indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            raise self._os_error(e)

    def _seal(self, entries: dict[str, str]) -> dict:
        if self._salt is None:
            self._salt = os.urandom(settings.argon2_salt_len)
        key = self._derive(self._salt)
        nonce = os.urandom(settings.crypto_nonce_len)
        plaintext = json.dumps(entries, separators=(",", ":")).encode("utf-8")
        ct = AESGCM(key).encrypt(nonce, plaintext, SEAL_AAD)
        return {
            "version": FILE_VERSION,
            "sealed": True,
            "kdf": "argon2id",
            "salt": self._salt.hex(),
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "ciphertext": base64.b64encode(ct).decode("ascii"),
        }

    def _unseal(self, doc: dict) -> dict[str, str]:
        if not self.is_sealed:
            raise KeyStorageError(
                StorageErrorKind.access_denied,
                "Secret file is sealed and no passphrase is configured",
                {"path": str(self._path)},
            )
        try:
            salt = bytes.fromhex(doc["salt"])
            nonce = base64.b64decode(doc["nonce"])
            ct = base64.b64decode(doc["ciphertext"])
        except (KeyError, ValueError, binascii.Error):
            raise KeyStorageError(
                StorageErrorKind.access_denied,
                "Sealed secret file is malformed",
                {"path": str(self._path)},
            )
        self._salt = salt
        try:
            plaintext = AESGCM(self._derive(salt)).decrypt(nonce, ct, SEAL_AAD)
        except InvalidTag:
            self._forget_key()
            raise KeyStorageError(
                StorageErrorKind.access_denied,
                "Invalid passphrase for secret file",
                {"path": str(self._path)},
            )
        return dict(json.loads(plaintext))

    def _derive(self, salt: bytes) -> bytes:
        if self._seal_key is None:
            derived = hash_secret_raw(
                secret=self._passphrase.encode("utf-8"),
                salt=salt,
                time_cost=self._time_cost,
                memory_cost=self._memory_cost,
                parallelism=self._parallelism,
                hash_len=settings.argon2_hash_len,
                type=Type.ID,
            )
            self._seal_key = bytearray(derived)
        return bytes(self._seal_key)

    def _forget_key(self) -> None:
        if self._seal_key is not None:
            self._wipe(self._seal_key)
            self._seal_key = None

    def _os_error(self, e: OSError) -> KeyStorageError:
        if e.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
            kind = StorageErrorKind.insufficient_space
        else:
            kind = StorageErrorKind.access_denied
        return KeyStorageError(kind, f"Secret storage I/O failed: {e}", {"path": str(self._path)})

    @staticmethod
    def _wipe(buf: bytearray) -> None:
        for i in range(len(buf)):
            buf[i] = 0
