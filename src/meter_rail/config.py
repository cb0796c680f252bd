"""
Engine Configuration

Everything is read from the environment, the same way the server reads
API_KEY, DATABASE_URL and PORT.
"""

from typing import Any, Literal, Mapping, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import InvalidConfiguration

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class MeterConfig(BaseSettings):
    """Runtime settings for the metering engine and its drivers."""

    model_config = SettingsConfigDict(
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # A tick interval or refresh period of 0 disables that driver
    tick_interval_ms: int = Field(100, ge=0, alias="METER_TICK_INTERVAL_MS")
    auto_stop: bool = Field(True, alias="METER_AUTO_STOP")
    settlement_unit: str = Field("ETH", alias="METER_SETTLEMENT_UNIT")
    base_currency: str = Field("USD", alias="METER_BASE_CURRENCY")
    history_limit: int = Field(20, ge=1, alias="METER_HISTORY_LIMIT")
    rate_refresh_seconds: int = Field(5, ge=0, alias="METER_RATE_REFRESH_SECONDS")
    rate_feed: Literal["static", "simulated"] = Field("static", alias="METER_RATE_FEED")

    # Unset keeps the lifetime-spend ledger in memory
    database_url: Optional[str] = Field(None, alias="DATABASE_URL")
    api_key: str = Field("dev-key-change-in-production", alias="API_KEY")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    @model_validator(mode="before")
    @classmethod
    def _drop_empty(cls, data: Any) -> Any:
        # VAR= in a shell means "use the default"
        if isinstance(data, Mapping):
            return {k: v for k, v in data.items() if v != ""}
        return data

    @field_validator("settlement_unit", "base_currency", mode="before")
    @classmethod
    def _upper_code(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("rate_feed", mode="before")
    @classmethod
    def _lower_feed(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("log_level", mode="before")
    @classmethod
    def _check_log_level(cls, value: Any) -> str:
        level = str(value).strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Invalid LOG_LEVEL: {value}")
        return level

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MeterConfig":
        """
        Load from environment variables, or from an explicit mapping of them.

        Raises:
            InvalidConfiguration: Malformed or out-of-range value
        """
        try:
            if env is None:
                return cls()
            return cls.model_validate(dict(env))
        except ValidationError as e:
            raise InvalidConfiguration(f"Invalid configuration: {e}") from e
