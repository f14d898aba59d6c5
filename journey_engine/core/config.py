import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Journey Engine"
    env: str = "dev"

    # DATABASE
    database_url: str = "sqlite:///./journeys.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # COLLABORATORS
    messaging_provider_default: str = "whatsapp_stub"
    customer_directory_default: str = "memory"
    whatsapp_access_token: str | None = None
    whatsapp_phone_number_id: str | None = None

    # JOURNEY RUNTIME
    journey_activity_log_cap: int = Field(default=500, ge=1, le=100_000)
    journey_retry_max_attempts: int = Field(default=3, ge=1, le=50)
    journey_retry_base_delay_ms: int = Field(default=60_000, ge=1)
    journey_scheduler_batch_size: int = Field(default=200, ge=1, le=10_000)
    journey_max_steps_per_advance: int = Field(default=250, ge=1, le=10_000)
    journey_backup_dir: str = ".journey-backups"
    api_timeout_hint_ms: int = Field(default=300000, ge=1000, le=1_800_000)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator(
        "whatsapp_access_token",
        "whatsapp_phone_number_id",
        "cors_origin_regex",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL must point at a networked database in production")
        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")
        if self.messaging_provider_default.strip().lower().endswith("_stub"):
            raise ValueError("MESSAGING_PROVIDER_DEFAULT cannot be a stub provider in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
