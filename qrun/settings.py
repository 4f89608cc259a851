from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """
    Worker and enqueue configuration.

    Populated once at startup (CLI flags override QRUN_* environment
    variables, which override the defaults below) and then passed around
    read-only.
    """

    model_config = SettingsConfigDict(env_prefix="QRUN_", env_file=".env", extra="ignore")

    # Queue naming
    prefix: str = "qdone_"
    fail_suffix: str = "_failed"
    dlq_suffix: str = "_dead"
    fifo: bool = False

    # AWS
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None

    # Cache / dedup
    cache_uri: Optional[str] = None
    cache_prefix: str = "qdone:"
    cache_ttl_seconds: int = 10
    external_dedup: bool = False
    dedup_period: int = 300
    dedup_id_per_message: bool = False
    deduplication_id: Optional[str] = None

    # Enqueue
    group_id: Optional[str] = None
    group_id_per_message: bool = False
    message_retention_period: int = 1209600
    delay: int = Field(default=0, ge=0, le=900)
    send_retries: int = 6
    fail_delay: int = Field(default=120, ge=0, le=900)
    dlq: bool = True
    dlq_after: int = 3
    tags: dict[str, str] = Field(default_factory=dict)

    # Worker
    wait_time: int = Field(default=20, ge=0, le=20)
    kill_after: int = 30
    visibility_timeout: int = 30
    max_concurrent_jobs: int = Field(default=100, ge=1)
    include_failed: bool = False
    include_dead: bool = False
    active_only: bool = False
    archive: bool = False
    drain: bool = False
    json_payload: bool = False
    resolve_seconds: float = 10.0
    poll_interval: float = 1.0

    # Idle queues
    idle_for: int = Field(default=60, ge=5)

    # Output
    quiet: bool = False
    verbose: bool = False
    disable_log: bool = False
    metrics_port: Optional[int] = None

    @model_validator(mode="after")
    def validate_dedup_settings(self):
        if self.external_dedup:
            if not self.cache_uri:
                raise ValueError("external_dedup requires cache_uri to be set")
            if self.dedup_period < 1:
                raise ValueError("dedup_period must be at least 1 second")
        if self.dedup_id_per_message and self.deduplication_id:
            raise ValueError("dedup_id_per_message and deduplication_id are mutually exclusive")
        return self

    @model_validator(mode="after")
    def validate_drain(self):
        if self.drain and self.wait_time == 0:
            raise ValueError("drain cannot be used with wait_time 0")
        return self

    @model_validator(mode="after")
    def validate_cache_uri(self):
        if self.cache_uri and not self.cache_uri.startswith(("redis://", "rediss://", "redis-cluster://")):
            raise ValueError(f"Only redis:// or redis-cluster:// cache URIs are supported, got {self.cache_uri}")
        return self

    def fifo_suffix(self) -> str:
        return ".fifo" if self.fifo else ""

_settings: Optional[Settings] = None

def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

def set_settings(settings: Settings) -> None:
    """Override the process default (the CLI and tests use this)."""
    global _settings
    _settings = settings

def reset_settings() -> None:
    global _settings
    _settings = None
