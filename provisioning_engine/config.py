#provisioning_engine\config.py

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # PostgreSQL connection (NO DEFAULTS)
    postgres_user: str
    postgres_password: str
    postgres_host: str
    postgres_port: int
    postgres_db: str

    # Connection pool
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600

    # SQLAlchemy
    echo_sql: bool = False

    @property
    def database_url(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


class EngineSettings(BaseSettings):
    """Provisioning engine configuration (ENGINE_* environment variables)."""

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Vault
    vault_secret: str
    vault_salt: str = "provisioning-engine"
    vault_iterations: int = 200_000

    # Remote execution
    remote_root: str = "/srv/provisioning"
    ssh_connect_timeout: float = 10.0
    command_timeout: float = 600.0
    pipeline_deadline: float = 3600.0
    initializing_timeout: int = 7200

    # Domain distribution
    staleness_window: int = 300
    resync_delay: float = 2.0

    # Job queue
    queue_concurrency: int = 2
    queue_poll_interval: float = 2.0
    queue_max_attempts: int = 3
    queue_backoff_base: int = 10
    queue_lease_seconds: int = 900

    # Container engine / cluster
    docker_tls_port: int = 2376
    swarm_port: int = 2377

    # Scheduler
    ping_timeout: int = 2
    availability_interval: int = 60
    resync_interval: int = 300
    directives_interval: int = 600

    # Certificates
    certbot_email: Optional[str] = None
    certbot_dir: str = "/var/lib/provisioning/certbot"
    certbot_staging: bool = False
    organization: str = "Provisioning Engine"


@lru_cache
def get_database_settings() -> DatabaseSettings:
    return DatabaseSettings()


@lru_cache
def get_engine_settings() -> EngineSettings:
    return EngineSettings()
