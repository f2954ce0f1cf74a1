"""Engine configuration loaded from environment variables."""
import logging
from datetime import timedelta
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the lifecycle engine. Every field can be overridden with REQUESTFLOW_<NAME>."""

    model_config = SettingsConfigDict(
        env_prefix="REQUESTFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database (SQLite locally, PostgreSQL in production)
    database_url: str = "sqlite:///./requestflow.db"

    # SLA windows per priority, counted from triage
    sla_hours_urgent: int = 24
    sla_hours_high: int = 72
    sla_hours_medium: int = 7 * 24
    sla_hours_low: int = 14 * 24

    # Citizen reopen window after RESOLVED
    reopen_window_days: int = 14

    # Reviews with an overall score below this need follow-up
    review_follow_up_threshold: float = 6.0

    log_level: str = "INFO"

    def sla_windows(self) -> dict:
        """Priority name -> SLA duration."""
        return {
            "URGENT": timedelta(hours=self.sla_hours_urgent),
            "HIGH": timedelta(hours=self.sla_hours_high),
            "MEDIUM": timedelta(hours=self.sla_hours_medium),
            "LOW": timedelta(hours=self.sla_hours_low),
        }

    @property
    def reopen_window(self) -> timedelta:
        return timedelta(days=self.reopen_window_days)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Settings = None) -> None:
    """Set up root logging once for the process."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
