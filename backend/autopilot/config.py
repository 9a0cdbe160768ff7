import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"
    log_level: str = "INFO"

    database_url: str = "postgresql+asyncpg://localhost/ads_autopilot"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Managed Postgres hands out postgresql://; the async engine needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cron_secret: str = ""
    encryption_key: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Amazon Ads API
    ads_api_timeout_seconds: float = 30.0

    # Action queue
    idempotency_bucket_hours: int = 24
    claim_timeout_minutes: int = 15
    action_max_deliveries: int = 3

    # Execution worker
    worker_batch_size: int = 25
    worker_max_attempts: int = 3
    worker_base_delay_seconds: float = 1.0
    worker_max_delay_seconds: float = 30.0
    worker_jitter: float = 0.1
    worker_circuit_threshold: int = 3

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.cron_secret:
                raise ValueError("CRON_SECRET must be set in production so scheduled triggers can authenticate.")
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if self.idempotency_bucket_hours < 1:
            raise ValueError("IDEMPOTENCY_BUCKET_HOURS must be at least 1.")
        if self.worker_max_attempts < 1 or self.action_max_deliveries < 1:
            raise ValueError("WORKER_MAX_ATTEMPTS and ACTION_MAX_DELIVERIES must be at least 1.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
