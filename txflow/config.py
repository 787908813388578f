from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        env_prefix="TXFLOW_",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Network
    rpc_url: str = Field(default="", description="JSON-RPC endpoint used for gas, nonces and broadcasting")
    rpc_timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP timeout for RPC calls")
    default_chain_id: int = Field(default=1, ge=1, description="Chain id assumed when a caller omits one")

    # Flow orchestration
    confirmation_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How long a flow may wait for user confirmation before it is cancelled",
    )
    retry_delay_seconds: float = Field(default=5.0, ge=0, description="Initial delay before an automatic retry")
    retry_max_delay_seconds: float = Field(default=60.0, ge=0, description="Ceiling for retry backoff")
    max_retry_attempts: int = Field(default=3, ge=0, description="Automatic retries allowed per flow")
    flow_eviction_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Seconds a terminal flow stays in the in-memory index",
    )

    # Queue / batching
    enable_batching: bool = Field(default=True, description="Drain the transaction queue in the background")
    batch_size: int = Field(default=10, ge=1, description="Requests taken from the queue per drain")
    batch_interval_seconds: float = Field(default=5.0, gt=0, description="Interval between queue drains")
    queue_max_size: int = Field(default=100, ge=1, description="Maximum queued requests")

    # Confirmation tracking
    required_confirmations: int = Field(default=1, ge=1, description="Block confirmations before completion")
    receipt_timeout_seconds: float = Field(default=300.0, gt=0, description="Max wait for a receipt")
    receipt_poll_interval_seconds: float = Field(default=2.0, gt=0, description="Receipt polling interval")

    # Gas
    gas_buffer_percent: int = Field(default=20, ge=0, le=200, description="Safety margin added to gas estimates")

    # Persistence
    store_backend: str = Field(default="memory", description="Flow store backend: memory or sqlite")
    store_path: Optional[str] = Field(default=None, description="SQLite database path for the sqlite backend")

    @property
    def has_rpc_url(self) -> bool:
        return bool(self.rpc_url)

    @property
    def uses_sqlite_store(self) -> bool:
        return self.store_backend.lower() == "sqlite"


# Global settings instance
settings = Settings()
