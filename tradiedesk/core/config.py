import json
from typing import List, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_origins(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw.startswith("["):
            value = json.loads(raw)
            if not isinstance(value, list):
                raise ValueError("CORS_ORIGINS JSON value must be a list")
        else:
            value = raw.split(",")
    if not isinstance(value, list):
        raise ValueError(f"Unsupported CORS_ORIGINS value: {value!r}")
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseSettings):
    app_name: str = "TradieDesk Automations"
    env: str = "dev"

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # EMAIL / SMS
    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender_email: str | None = None
    smtp_sender_name: str | None = None
    smtp_reply_to_email: str | None = None
    smtp_use_starttls: bool = True
    smtp_use_ssl: bool = False
    smtp_timeout_seconds: int = Field(default=20, ge=1, le=120)
    sms_provider_default: str = "sms_log"

    # AUTOMATIONS
    automation_timezone: str = "UTC"
    automation_no_response_default_days: int = Field(default=3, ge=0, le=365)
    automation_time_delay_default_days: int = Field(default=1, ge=-365, le=365)
    automation_invoice_due_days: int = Field(default=14, ge=0, le=365)
    automation_business_name_fallback: str = "Your Tradie"
    automation_scan_interval_minutes: int = Field(default=15, ge=1, le=60)
    automation_log_default_limit: int = Field(default=50, ge=1, le=500)
    invoice_number_prefix: str = "TT-"

    # WORKER
    redis_url: str = "redis://localhost:6379/0"
    worker_max_jobs: int = Field(default=10, ge=1, le=200)
    worker_job_timeout_seconds: int = Field(default=600, ge=10, le=3600)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str], None]) -> List[str]:
        return _split_origins(v)

    @field_validator(
        "smtp_host",
        "smtp_username",
        "smtp_password",
        "smtp_sender_email",
        "smtp_sender_name",
        "smtp_reply_to_email",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("automation_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        cleaned = (value or "").strip() or "UTC"
        try:
            ZoneInfo(cleaned)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown AUTOMATION_TIMEZONE '{value}'") from None
        return cleaned

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        problems = []
        if "*" in self.cors_origins:
            problems.append("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            problems.append("CORS_ORIGIN_REGEX cannot be set in production")
        if self.database_url.lower().startswith("sqlite"):
            problems.append("DATABASE_URL must point at Postgres in production")
        if self.smtp_use_ssl and self.smtp_use_starttls:
            problems.append("Set only one of SMTP_USE_SSL or SMTP_USE_STARTTLS in production")
        if problems:
            raise ValueError("; ".join(problems))
        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
