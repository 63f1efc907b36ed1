"""
Authenticated encryption for sync snapshots.

AES-256-GCM with a fresh 12-byte IV per call. The 16-byte tag is split off
the ciphertext so the stored payload names each part explicitly:

    {"v": 1, "algorithm": "AES-256-GCM", "key_id": ..., "iv": b64,
     "ciphertext": b64, "auth_tag": b64, "checksum": sha256-hex, "timestamp": iso}

``to_combined()`` still yields the CryptoKit sealed-box layout
(iv || ciphertext || tag) for clients that want a single blob.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from clinicsync.config.settings import settings
from clinicsync.sync.clock import Clock, parse_iso, utc_now
from clinicsync.sync.errors import (
    AuthenticationFailed, IntegrityError, IntegrityErrorKind, UnsupportedAlgorithm,
)
from clinicsync.sync.serialization import canonical_json, loads

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
SUPPORTED_ALGORITHMS = frozenset({ALGORITHM})
KEY_LEN = 32
PAYLOAD_VERSION = 1


@dataclass
class EncryptedPayload:
    """Ciphertext plus everything needed to authenticate and check it."""

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    algorithm: str
    checksum: str
    timestamp: datetime
    key_id: Optional[str] = None

    def to_combined(self) -> bytes:
        """iOS CryptoKit AES.GCM.SealedBox.combined format."""
        return self.iv + self.ciphertext + self.auth_tag

    def to_dict(self) -> dict:
        return {
            "v": PAYLOAD_VERSION,
            "algorithm": self.algorithm,
            "key_id": self.key_id,
            "iv": base64.b64encode(self.iv).decode("ascii"),
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "auth_tag": base64.b64encode(self.auth_tag).decode("ascii"),
            "checksum": self.checksum,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EncryptedPayload":
        if not isinstance(data, dict):
            raise IntegrityError(IntegrityErrorKind.corrupted_data, "Payload is not an object")
        if data.get("v", PAYLOAD_VERSION) != PAYLOAD_VERSION:
            raise IntegrityError(
                IntegrityErrorKind.version_mismatch,
                f"Unsupported payload version: {data.get('v')}",
            )
        try:
            timestamp = parse_iso(data["timestamp"])
            if timestamp is None:
                raise ValueError("unreadable timestamp")
            return cls(
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                iv=base64.b64decode(data["iv"], validate=True),
                auth_tag=base64.b64decode(data["auth_tag"], validate=True),
                algorithm=str(data["algorithm"]),
                checksum=str(data["checksum"]),
                timestamp=timestamp,
                key_id=data.get("key_id"),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise IntegrityError(
                IntegrityErrorKind.corrupted_data, f"Malformed encrypted payload: {e}"
            )

    def to_bytes(self) -> bytes:
        return canonical_json(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedPayload":
        try:
            decoded = loads(data)
        except (UnicodeDecodeError, ValueError):
            raise IntegrityError(IntegrityErrorKind.corrupted_data, "Payload is not valid JSON")
        return cls.from_dict(decoded)


class EncryptionCodec:
    """Encrypts JSON-compatible objects under caller-supplied key material."""

    def __init__(
        self,
        iterations: Optional[int] = None,
        nonce_len: Optional[int] = None,
        tag_len: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        self.iterations = iterations or settings.pbkdf2_iterations
        self.nonce_len = nonce_len or settings.crypto_nonce_len
        self.tag_len = tag_len or settings.crypto_tag_len
        self._clock = clock

    # ── Encrypt / Decrypt ───────────────────────────────────────

    def encrypt(
        self,
        obj: Any,
        key: bytes,
        key_id: Optional[str] = None,
        aad: Optional[bytes] = None,
    ) -> EncryptedPayload:
        if len(key) != KEY_LEN:
            raise IntegrityError(
                IntegrityErrorKind.encryption_failed,
                f"Key must be {KEY_LEN} bytes, got {len(key)}",
            )
        try:
            plaintext = canonical_json(obj)
        except (TypeError, ValueError) as e:
            raise IntegrityError(IntegrityErrorKind.encryption_failed, f"Cannot serialize: {e}")

        iv = os.urandom(self.nonce_len)
        sealed = AESGCM(key).encrypt(iv, plaintext, aad)  # ciphertext || tag
        return EncryptedPayload(
            ciphertext=sealed[:-self.tag_len],
            iv=iv,
            auth_tag=sealed[-self.tag_len:],
            algorithm=ALGORITHM,
            checksum=hashlib.sha256(plaintext).hexdigest(),
            timestamp=self._clock(),
            key_id=key_id,
        )

    def decrypt(self, payload: EncryptedPayload, key: bytes, aad: Optional[bytes] = None) -> Any:
        if payload.algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithm(payload.algorithm)
        try:
            plaintext = AESGCM(key).decrypt(payload.iv, payload.ciphertext + payload.auth_tag, aad)
        except (InvalidTag, ValueError):
            # Wrong key and tampered ciphertext fail identically.
            raise AuthenticationFailed(context={"key_id": payload.key_id})

        if not self.validate_integrity(plaintext, payload.checksum):
            raise IntegrityError(
                IntegrityErrorKind.checksum_mismatch,
                "Plaintext checksum does not match payload checksum",
                {"key_id": payload.key_id},
            )
        try:
            return loads(plaintext)
        except (UnicodeDecodeError, ValueError):
            raise IntegrityError(IntegrityErrorKind.corrupted_data, "Decrypted data is not valid JSON")

    def decrypt_with_candidates(
        self,
        payload: EncryptedPayload,
        candidates: Iterable[tuple[str, bytes]],
    ) -> tuple[Any, str]:
        """Try each (key_id, key) in order. Returns (object, key_id that worked)."""
        if payload.algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithm(payload.algorithm)
        tried: list[str] = []
        for key_id, key in candidates:
            if key_id in tried:
                continue
            tried.append(key_id)
            try:
                obj = self.decrypt(payload, key)
            except AuthenticationFailed:
                logger.debug("Key %s did not open payload", key_id)
                continue
            if len(tried) > 1:
                logger.info("Payload opened with fallback key %s", key_id)
            return obj, key_id
        raise AuthenticationFailed(
            "No candidate key could decrypt the payload",
            {"key_id": payload.key_id, "tried": tried},
        )

    # ── Integrity ───────────────────────────────────────────────

    @staticmethod
    def checksum(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def validate_integrity(data: bytes, expected_checksum: str) -> bool:
        actual = hashlib.sha256(data).hexdigest()
        return hmac.compare_digest(actual.encode("ascii"), (expected_checksum or "").encode("utf-8"))

    # ── Key derivation ──────────────────────────────────────────

    def derive_key(self, tenant_id: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
        """PBKDF2-HMAC-SHA256 over the tenant id. Deterministic for fixed inputs."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LEN,
            salt=salt,
            iterations=iterations or self.iterations,
        )
        return kdf.derive(tenant_id.encode("utf-8"))

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(settings.crypto_salt_len)
