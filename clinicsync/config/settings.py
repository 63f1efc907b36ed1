from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional, Literal


BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Identity
    tenant_id: str = "default"
    origin_id: Optional[str] = None                     # generated and persisted on first run

    # Database
    data_dir: Path = BASE_DIR / "data"
    database_url: str = f"sqlite:///{BASE_DIR}/data/db/clinicsync.db"

    # Server
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Sync Engine
    sync_enabled: bool = False
    sync_tables: list[str] = ["patients", "visits", "payments"]
    sync_interval_seconds: int = 3600                   # 1 hour
    auto_backup_enabled: bool = True
    auto_backup_debounce_seconds: float = 30.0
    conflict_strategy: Literal[
        "last_write_wins", "use_local", "use_remote", "merge", "manual"
    ] = "last_write_wins"
    legacy_key_fallback: bool = True

    # Remote storage
    storage_backend: Literal["local", "s3"] = "local"
    local_storage_dir: Path = BASE_DIR / "data" / "remote"
    sync_s3_endpoint_url: Optional[str] = None          # e.g. http://localhost:9000
    sync_s3_access_key: Optional[str] = None
    sync_s3_secret_key: Optional[str] = None
    sync_s3_bucket: str = "clinicsync"
    sync_s3_region: str = "us-east-1"

    # Secret storage
    secrets_path: Path = BASE_DIR / "data" / "crypto" / "secrets.json"
    secrets_passphrase: Optional[str] = None            # seals the secret file when set
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536          # 64 MB
    argon2_parallelism: int = 4
    argon2_hash_len: int = 32                # 256-bit key
    argon2_salt_len: int = 16

    # Keys / Encryption
    key_rotation_days: int = 90
    key_history_limit: int = 5
    pbkdf2_iterations: int = 100_000
    crypto_salt_len: int = 32
    crypto_nonce_len: int = 12               # AES-GCM standard
    crypto_tag_len: int = 16                 # AES-GCM tag

    # Resilience
    retry_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 300.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter_factor: float = 0.1
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 60.0
    breaker_timeout_seconds: float = 900.0   # covers a fully retried operation

    # Retention
    retention_max_daily: int = 30
    retention_max_monthly: int = 12
    retention_max_yearly: int = 5
    retention_max_age_days: int = 730

    def model_post_init(self, __context):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "db").mkdir(parents=True, exist_ok=True)
        self.secrets_path.parent.mkdir(parents=True, exist_ok=True)


settings = Settings()
