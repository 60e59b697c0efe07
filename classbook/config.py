from __future__ import annotations

import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    tz: str = Field(default=os.getenv("TZ", "America/New_York"), alias="TZ")
    site_url: str = Field(default="http://localhost:3000", alias="SITE_URL")

    db_url: str = Field(default="sqlite+aiosqlite:///./classbook.sqlite3", alias="DB_URL")

    # class offerings
    currency: str = Field(default="usd", alias="CURRENCY")
    default_max_capacity: int = Field(default=15, alias="DEFAULT_MAX_CAPACITY")
    class_buffer_minutes: int = Field(default=30, alias="CLASS_BUFFER_MINUTES")
    checkout_expiry_minutes: int = Field(default=30, alias="CHECKOUT_EXPIRY_MINUTES")

    # lifecycle notifications
    notifier_enabled: bool = Field(default=True, alias="NOTIFIER_ENABLED")
    notifier_interval_minutes: int = Field(default=60, alias="NOTIFIER_INTERVAL_MINUTES")
    notifier_batch_size: int = Field(default=10, alias="NOTIFIER_BATCH_SIZE")
    notifier_batch_delay_seconds: float = Field(default=1.0, alias="NOTIFIER_BATCH_DELAY_SECONDS")
    lead_source: str = Field(default="bio", alias="LEAD_SOURCE")
    lead_followup_delay_hours: int = Field(default=24, alias="LEAD_FOLLOWUP_DELAY_HOURS")
    pre_class_window_hours: int = Field(default=24, alias="PRE_CLASS_WINDOW_HOURS")
    post_class_grace_minutes: int = Field(default=60, alias="POST_CLASS_GRACE_MINUTES")
    rebook_lookback_hours: int = Field(default=24, alias="REBOOK_LOOKBACK_HOURS")

    # welcome passes and marketing throttle
    free_pass_minutes: int = Field(default=30, alias="FREE_PASS_MINUTES")
    throttle_window_days: int = Field(default=7, alias="THROTTLE_WINDOW_DAYS")
    throttle_engaged_limit: int = Field(default=3, alias="THROTTLE_ENGAGED_LIMIT")
    throttle_default_limit: int = Field(default=1, alias="THROTTLE_DEFAULT_LIMIT")
    engaged_booking_days: int = Field(default=30, alias="ENGAGED_BOOKING_DAYS")

    smtp_enabled: bool = Field(default=False, alias="SMTP_ENABLED")
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_from: str = Field(default="", alias="SMTP_FROM")

    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")

    google_calendar_enabled: bool = Field(
        default=False, alias="GOOGLE_CALENDAR_ENABLED"
    )
    google_calendar_id: str = Field(default="primary", alias="GOOGLE_CALENDAR_ID")
    google_credentials_json_path: str = Field(
        default="./google_credentials.json", alias="GOOGLE_CREDENTIALS_JSON_PATH"
    )
    google_oauth_token_path: str = Field(
        default="", alias="GOOGLE_OAUTH_TOKEN_PATH"
    )
    google_calendar_allow_service_account: bool = Field(
        default=False, alias="GOOGLE_CALENDAR_ALLOW_SERVICE_ACCOUNT"
    )

    @field_validator("notifier_batch_size", mode="before")
    @classmethod
    def _parse_batch_size(cls, v):
        if v is None or v == "":
            return 10
        return max(1, int(v))

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "populate_by_name": True,
        "extra": "ignore",
    }

settings = Settings()
