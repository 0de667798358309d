from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres (Supabase) settings
    SUPABASE_DB_URL: str = ""

    # Redis settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ENABLED: bool = True

    # Gmail OAuth settings
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

    ENCRYPTION_KEY: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # GMAIL INGESTION
    # =================================================================
    GMAIL_SYNC_QUERY: str = "from:me"  # Only sent emails
    GMAIL_PAGE_SIZE: int = 100
    GMAIL_FETCH_CONCURRENCY: int = 5
    DEFAULT_SYNC_FREQUENCY_MINUTES: int = 15
    SYNC_LOCK_TTL_MARGIN_SECONDS: int = 60

    # =================================================================
    # OFFLINE QUEUE + LEADER ELECTION
    # =================================================================
    OFFLINE_DB_PATH: Path = Path("data/offline_queue.db")
    SYNC_BATCH_SIZE: int = 20
    SYNC_MAX_RETRIES: int = 5
    SYNC_BASE_BACKOFF_SECONDS: float = 1.0
    SYNC_MAX_BACKOFF_SECONDS: float = 3600.0  # 1 hour
    SYNCED_RETENTION_HOURS: int = 24
    FAILED_RETENTION_HOURS: int = 168  # 7 days
    QUEUE_MAX_ENTRIES: int = 1000
    QUEUE_MAX_TOTAL_BYTES: int = 5 * 1024 * 1024

    LEADER_CHANNEL: str = "offline_leader_v1"
    LEADER_CLAIM_WINDOW_SECONDS: float = 0.25
    LEADER_HEARTBEAT_SECONDS: float = 5.0
    LEADER_LEASE_TTL_SECONDS: float = 10.0
    MAINTENANCE_INTERVAL_SECONDS: float = 3600.0  # hourly

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # Keep local runs light
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
