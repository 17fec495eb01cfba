"""Runtime configuration for the deployment server and client agent."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Deployment server settings, read from DEPLOYER_* env vars or .env."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/deployer.db",
        description="SQLAlchemy async database URL",
    )
    storage_root: str = Field(
        default="./packages", description="Root directory for uploaded packages"
    )
    log_file: str = "./logs/server.log"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8102

    offline_threshold_seconds: int = Field(
        default=120, gt=0, description="Heartbeat silence before a machine is Offline"
    )
    default_max_retries: int = Field(default=3, ge=0)
    retry_backoff_base_seconds: int = Field(default=30, gt=0)
    retry_backoff_max_seconds: int = Field(default=900, gt=0)
    claim_timeout_seconds: int = Field(
        default=1800, gt=0, description="Report silence after which an InProgress task is failed"
    )
    stale_sweep_interval_seconds: float = Field(
        default=60.0, gt=0, description="Interval of the stale claim sweep"
    )


class AgentSettings(BaseSettings):
    """Client agent settings, read from DEPLOYER_AGENT_* env vars or .env."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYER_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server_url: str = "http://localhost:8102"
    heartbeat_interval_seconds: float = 30.0
    poll_interval_seconds: float = 30.0
    poll_initial_delay_seconds: float = 5.0
    registration_retry_seconds: float = 60.0
    request_timeout_seconds: float = 10.0
    download_timeout_seconds: float = 300.0

    apps_root: str = "./apps"
    tmp_dir: str = "./tmp"
    state_file: str = "./tmp/agent_state.json"

    process_stop_timeout_seconds: float = 5.0
    install_lock_timeout_seconds: float = 60.0
    integrity_retries: int = Field(
        default=2, ge=0, description="Re-downloads after a hash mismatch"
    )
    report_attempts: int = Field(
        default=3, ge=1, description="Attempts for terminal status reports"
    )

    log_file: str = "./logs/agent.log"
    log_level: str = "INFO"
    client_version: str = "1.0.0"
    location: Optional[str] = None
