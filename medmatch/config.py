"""
Application configuration, read from MEDMATCH_* environment variables
(and an optional .env file).
"""

import logging
from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEDMATCH_", env_file=".env", extra="ignore"
    )

    # Escalation cadence. Production uses a 24h staleness window; testing
    # environments typically drop it to a couple of minutes.
    scheduler_enabled: bool = True
    escalation_interval_seconds: float = Field(default=60.0, gt=0)
    staleness_threshold_minutes: float = Field(default=24 * 60, gt=0)
    # service id -> staleness in minutes, for services with tighter SLAs
    service_staleness_minutes: dict[str, float] = Field(default_factory=dict)

    store_timeout_seconds: float = Field(default=5.0, gt=0)

    notification_webhook_url: str | None = None
    notification_timeout_seconds: float = Field(default=10.0, gt=0)

    log_level: str = "INFO"

    def staleness_for(self, service_ref: str) -> timedelta:
        minutes = self.service_staleness_minutes.get(
            service_ref, self.staleness_threshold_minutes
        )
        return timedelta(minutes=minutes)

    @property
    def min_staleness(self) -> timedelta:
        return timedelta(
            minutes=min(
                [
                    self.staleness_threshold_minutes,
                    *self.service_staleness_minutes.values(),
                ]
            )
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
