# backend/reservations/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/reservations.db"
    redis_url: str | None = None

    # Storage
    db_busy_timeout_seconds: float = 5.0
    storage_retry_attempts: int = 3
    storage_retry_backoff_seconds: float = 0.05

    # Holds
    hold_ttl_minutes: int = 10
    hold_sweep_interval_seconds: int = 30

    # Slot grid
    horizon_days: int = 60
    min_advance_hours: int = 12
    slot_step_minutes: int = 30
    cache_ttl_seconds: int = 86400

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_prefix="RESERVATIONS_",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            # relative sqlite path → absolute, anchored at the project root
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            return f"sqlite:///{absolute_path}"
        return url


settings = Settings()
