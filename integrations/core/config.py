from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENV: str = "dev"
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = ""  # empty -> sqlite file under ./data

    ENCRYPTION_KEY: str = ""
    API_INTERNAL_KEY: str = ""
    INTERNAL_ALLOWED_IPS: List[str] = []
    CORS_ORIGINS: List[str] = []

    # refresh when fewer than this many seconds remain on the access token
    REFRESH_MARGIN_SECONDS: int = 1800
    DEFAULT_TOKEN_LIFETIME_SECONDS: int = 3600
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    HEALTH_SWEEP_CONCURRENCY: int = 5

    MICROSOFT_CLIENT_ID: str = ""
    MICROSOFT_CLIENT_SECRET: str = ""
    MICROSOFT_TENANT: str = "common"

    SLACK_CLIENT_ID: str = ""
    SLACK_CLIENT_SECRET: str = ""
    SLACK_BOT_TOKEN: str = ""    # system-level client, used when a user has no workspace connected
    SLACK_CHANNEL_ID: str = ""   # system default destination

    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("INTERNAL_ALLOWED_IPS", "CORS_ORIGINS", mode="before")
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    def system_tokens(self) -> dict[str, str]:
        return {"slack": self.SLACK_BOT_TOKEN} if self.SLACK_BOT_TOKEN else {}

    def system_destinations(self) -> dict[str, str]:
        return {"slack": self.SLACK_CHANNEL_ID} if self.SLACK_CHANNEL_ID else {}


settings = Settings()
