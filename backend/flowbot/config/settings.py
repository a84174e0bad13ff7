# /flowbot/config/settings.py

from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Deployment
    environment: str = "production"
    api_version: str = "v1"
    workers: int = 4

    # Redis (conversation state)
    redis_url: str = "redis://localhost:6379"

    # MongoDB (projects and their flow graphs)
    mongo_uri: str = "mongodb://localhost:27017/flowbot"
    mongo_projects_collection: str = "projects"

    # WhatsApp Cloud API
    whatsapp_api_base_url: str = "https://graph.facebook.com/v19.0"
    whatsapp_verify_token: str = "change-me"
    whatsapp_app_secret: str | None = None

    # Outbound HTTP (api nodes and button actions)
    http_timeout_seconds: float = 15.0

    # Flow execution
    session_ttl_seconds: int = 3600
    max_invalid_button_attempts: int = 3
    max_question_retries: int = 3
    max_steps_per_event: int = 50
    max_buttons: int = 3
    global_button_scan: bool = True

    # Concurrency
    session_lock_enabled: bool = True
    session_lock_ttl_seconds: int = 30
    session_lock_wait_seconds: float = 5.0
    dedupe_ttl_seconds: int = 300

    # HTTP surface
    rate_limit_per_minute: int = 100
    allowed_hosts: str = "*"
    cors_allowed_origins: List[str] = Field(default_factory=list)
    api_key: str | None = None

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept comma-separated strings as well as lists."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("max_invalid_button_attempts", "max_question_retries", "max_steps_per_event")
    @classmethod
    def limits_must_be_positive(cls, v):
        if v < 1:
            raise ValueError("Attempt and step limits must be at least 1")
        return v


settings = Settings()
