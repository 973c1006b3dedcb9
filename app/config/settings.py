import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, field_validator


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [s.strip() for s in raw.split(",") if s.strip()]


class Settings(BaseModel):
    DOOR_CODE_LENGTH: int = Field(4, ge=3, le=10)
    ACCESS_LEAD_MINUTES: float = Field(15, ge=0)
    ACCESS_TRAIL_MINUTES: float = Field(30, ge=0)
    LOOKAHEAD_MINUTES: float = Field(5, gt=0)
    POLL_INTERVAL_SEC: float = Field(60, gt=0)
    RELOCK_BUFFER_MINUTES: float = Field(5, ge=0)
    WEAK_CODE_BLACKLIST: list[str] = []
    CODE_HISTORY_CAP: int = Field(1000, gt=1)
    HISTORY_RETENTION_HOURS: float = Field(24, gt=0)
    CLEANUP_INTERVAL_SEC: float = Field(3600, gt=0)
    HEALTH_CHECK_INTERVAL_SEC: float = Field(300, gt=0)
    DISPLAY_TIMEZONE: str = "America/New_York"
    ADMIN_CONTACT: str | None = None
    BOOKING_API_BASE_URL: str | None = None
    BOOKING_API_KEY: str | None = None
    NOTIFIER_WEBHOOK_URL: str | None = None
    LOCK_API_BASE_URL: str | None = None
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("WEAK_CODE_BLACKLIST")
    @classmethod
    def check_blacklist(cls, value: list[str]) -> list[str]:
        bad = [v for v in value if not v.isdigit()]
        if bad:
            raise ValueError(f"blacklist entries must be digits: {bad}")
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {
            name: os.getenv(name)
            for name in cls.model_fields
            if name != "WEAK_CODE_BLACKLIST" and os.getenv(name) not in (None, "")
        }
        raw["WEAK_CODE_BLACKLIST"] = _split_csv(os.getenv("WEAK_CODE_BLACKLIST"))
        if "LOG_LEVEL" in raw:
            raw["LOG_LEVEL"] = raw["LOG_LEVEL"].upper()
        return cls.model_validate(raw)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
