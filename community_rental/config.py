"""Application configuration settings.

``Settings`` is loaded from environment variables (and an optional ``.env``
file) with ``pydantic-settings``. Booking window limits, the calendar
timezone used for day counting and the transaction retry budget all live
here so that the engine modules never read the environment themselves.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration values loaded from environment variables.

    Environment variable names map to fields by alias.
    """

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )

    # Storage
    database_url: str = Field(default="sqlite:///./rental.db", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    transaction_retries: int = Field(
        default=3,
        alias="TRANSACTION_RETRIES",
        description="Attempts for a booking transaction that hits a lock or serialization failure.",
    )

    # Bearer tokens
    secret_key: str = Field(default="", alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Booking windows
    max_range_days_user: int = Field(
        default=1,
        alias="MAX_RANGE_DAYS_USER",
        description="Calendar days a booking may extend past its start day for ordinary users.",
    )
    max_range_days_team: int = Field(
        default=13,
        alias="MAX_RANGE_DAYS_TEAM",
        description="Calendar days a booking may extend past its start day for rental team members.",
    )
    calendar_timezone: str = Field(
        default="UTC",
        alias="CALENDAR_TIMEZONE",
        description="IANA timezone whose calendar days are counted for the range limits.",
    )
    require_decline_reason: bool = Field(default=True, alias="REQUIRE_DECLINE_REASON")
    max_note_length: int = Field(default=1000, alias="MAX_NOTE_LENGTH")

    # Administrative blocks
    max_block_occurrences: int = Field(default=52, alias="MAX_BLOCK_OCCURRENCES")

    # Request throttling
    booking_rate_limit: int = Field(
        default=20,
        alias="BOOKING_RATE_LIMIT",
        description="Booking requests a single user may submit per window.",
    )
    booking_rate_window_seconds: int = Field(default=60, alias="BOOKING_RATE_WINDOW_SECONDS")

    # Maintenance jobs
    auto_borrow_lead_minutes: int = Field(default=15, alias="AUTO_BORROW_LEAD_MINUTES")
    stale_borrow_days: int = Field(default=14, alias="STALE_BORROW_DAYS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


# Instantiated at import time so other modules can import ``settings`` directly.
settings = Settings()
