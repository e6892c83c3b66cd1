from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "claims-engine"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./claims_engine.db"
    database_echo: bool = False

    # Concurrency
    lock_timeout_seconds: float = Field(default=2.0, gt=0)

    # Gifts
    gift_expiry_days: int = Field(default=30, ge=1)
    gift_claim_requires_email_match: bool = False
    gift_expiry_refund_enabled: bool = True

    # Slot programs
    selection_swap_cost: int = Field(default=15, ge=0)
    bonus_slot_cost: int = Field(default=25, gt=0)
    default_selection_slots: int = Field(default=3, ge=0)
    default_free_swaps: int = Field(default=1, ge=0)
    default_selection_program: str = "GROUNDBALL"

    # Redemption windows are anchored to this zone, never the caller's clock
    cadence_timezone: str = "UTC"

    @field_validator("cadence_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(f"Unknown cadence timezone: {value}") from error
        return value

    # Housekeeping scheduler
    housekeeping_scheduler_enabled: bool = False
    housekeeping_schedule_path: str = "config/schedules.toml"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
