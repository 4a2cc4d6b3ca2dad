import os
from collections.abc import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # Client identity
    name: str = Field(default="vendorlink", alias="VENDORLINK_NAME")
    base_url: str | None = Field(default=None, alias="VENDORLINK_BASE_URL")

    # Retry policy (durations in seconds)
    max_retries: int = Field(default=3, ge=0, alias="VENDORLINK_MAX_RETRIES")
    timeout: float = Field(default=30.0, gt=0, alias="VENDORLINK_TIMEOUT")
    retry_status_codes: frozenset[int] = Field(
        default=frozenset({429, 500, 502, 503, 504}),
        alias="VENDORLINK_RETRY_STATUS_CODES",
    )
    retry_delay: float = Field(default=1.0, ge=0, alias="VENDORLINK_RETRY_DELAY")
    max_retry_delay: float = Field(
        default=60.0, ge=0, alias="VENDORLINK_MAX_RETRY_DELAY"
    )
    jitter: float = Field(default=0.2, ge=0, le=1, alias="VENDORLINK_JITTER")

    # Circuit breaker
    failure_threshold: int = Field(
        default=3, ge=1, alias="VENDORLINK_FAILURE_THRESHOLD"
    )
    reset_timeout: float = Field(default=30.0, gt=0, alias="VENDORLINK_RESET_TIMEOUT")

    # Proactive request budget (unset means unlimited)
    requests_per_minute: int | None = Field(
        default=None, ge=1, alias="VENDORLINK_REQUESTS_PER_MINUTE"
    )
    requests_per_hour: int | None = Field(
        default=None, ge=1, alias="VENDORLINK_REQUESTS_PER_HOUR"
    )
    requests_per_day: int | None = Field(
        default=None, ge=1, alias="VENDORLINK_REQUESTS_PER_DAY"
    )

    # Stale entry reaper
    reaper_interval: float = Field(
        default=300.0, gt=0, alias="VENDORLINK_REAPER_INTERVAL"
    )
    stale_after: float = Field(default=1800.0, gt=0, alias="VENDORLINK_STALE_AFTER")

    @field_validator("retry_status_codes", mode="before")
    @classmethod
    def _split_status_codes(cls, value):
        # "429,500,503" from the environment
        if isinstance(value, str):
            return frozenset(int(code) for code in value.split(",") if code.strip())
        return value


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from ``env``, or from os.environ plus a local .env file."""
    if env is None:
        load_dotenv()
        env = os.environ
    return Settings.model_validate(dict(env))
