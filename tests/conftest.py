"""Shared test fixtures for clinicsync."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from clinicsync.storage.records import SqlRecordStore
from clinicsync.storage.secrets import InMemorySecretStorage
from clinicsync.sync.cloud import LocalDirectoryTransport
from clinicsync.sync.encryption import EncryptionCodec
from clinicsync.sync.engine import SyncEngine
from clinicsync.sync.keys import KeyManager
from clinicsync.sync.models import Record, RecordStatus, ResolutionStrategy
from clinicsync.sync.resilience import CircuitBreaker, ResilientExecutor, RetryPolicy
from clinicsync.sync.retention import RetentionPolicy

TENANT = "clinic-1"


async def no_sleep(delay: float) -> None:
    """Retry sleep replacement so tests never wait."""
    return None


def make_record(record_id: str, last_modified: int, status=RecordStatus.pending, origin="device-a", **fields) -> Record:
    return Record(
        id=record_id,
        fields=fields,
        last_modified=last_modified,
        sync_status=status,
        origin_id=origin,
    )


@pytest.fixture
def codec() -> EncryptionCodec:
    """Codec with cheap key derivation."""
    return EncryptionCodec(iterations=1000)


@pytest.fixture
def secret_storage() -> InMemorySecretStorage:
    return InMemorySecretStorage()


@pytest.fixture
def key_manager(secret_storage: InMemorySecretStorage, codec: EncryptionCodec) -> KeyManager:
    return KeyManager(secret_storage, codec, rotation_days=90, history_limit=5)


@pytest.fixture
def record_store(tmp_path: Path) -> SqlRecordStore:
    return SqlRecordStore.from_url(f"sqlite:///{tmp_path / 'clinic.db'}")


@pytest.fixture
def remote_dir(tmp_path: Path) -> Path:
    path = tmp_path / "remote"
    path.mkdir()
    return path


@pytest.fixture
def transport(remote_dir: Path) -> LocalDirectoryTransport:
    return LocalDirectoryTransport(remote_dir)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay=0.01, max_delay=0.05, sleep=no_sleep)


@pytest.fixture
def make_engine(
    tmp_path: Path,
    transport: LocalDirectoryTransport,
    key_manager: KeyManager,
    codec: EncryptionCodec,
) -> Callable[..., SyncEngine]:
    """Build engines for separate devices sharing one remote and one key store."""

    def factory(
        origin_id: str = "device-a",
        strategy: ResolutionStrategy = ResolutionStrategy.last_write_wins,
        remote=None,
        retention: RetentionPolicy | None = None,
        legacy_key_fallback: bool = True,
        auto_backup_delay: float = 30.0,
    ) -> SyncEngine:
        store = SqlRecordStore.from_url(f"sqlite:///{tmp_path / f'{origin_id}.db'}")
        executor = ResilientExecutor(
            RetryPolicy(max_retries=1, base_delay=0.01, max_delay=0.05, sleep=no_sleep),
            CircuitBreaker("test-storage", failure_threshold=5, reset_timeout=60.0, timeout=30.0),
        )
        return SyncEngine(
            tenant_id=TENANT,
            origin_id=origin_id,
            records=store,
            transport=remote or transport,
            keys=key_manager,
            codec=codec,
            executor=executor,
            tables=["patients", "visits", "payments"],
            conflict_strategy=strategy,
            retention=retention or RetentionPolicy(),
            legacy_key_fallback=legacy_key_fallback,
            sync_interval=3600,
            auto_backup_delay=auto_backup_delay,
        )

    return factory
