"""Application configuration using pydantic-settings."""
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    app_mode: str = "demo"
    fleet_db_path: str = "./data/fleet_state.db"
    timezone: str = "America/Sao_Paulo"
    auth_enabled: bool = False
    default_tenant_id: str = "demo"
    tenant_tokens: str = ""

    # Phone numbering plan (Brazil by default: 55 + 2-digit area code + 9-digit mobile)
    phone_country_code: str = "55"
    phone_area_code_length: int = 2
    phone_subscriber_length: int = 9

    # Intent classifier (OpenAI-compatible endpoint)
    openai_api_key: str = ""
    openai_base_url: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.0
    llm_max_tokens: int = 300
    classifier_timeout_seconds: float = 12.0
    classifier_learning_examples: int = 50

    # Outbound messaging
    default_messaging_provider: str = "zapi"
    zapi_base_url: str = "https://api.z-api.io/instances"
    zapi_instance_id: str = ""
    zapi_token: str = ""
    zapi_client_token: str = ""
    sendpulse_base_url: str = "https://api.sendpulse.com"
    sendpulse_client_id: str = ""
    sendpulse_client_secret: str = ""
    sendpulse_bot_id: str = ""
    outbound_timeout_seconds: float = 15.0

    # Inbound webhook guard
    webhook_client_token: str = ""

    def resolved_openai_api_key(self) -> str | None:
        key = (self.openai_api_key or "").strip()
        if key and key != "sk-your-key-here":
            return key
        return None

    def national_number_length(self) -> int:
        return self.phone_area_code_length + self.phone_subscriber_length

    def tzinfo(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except Exception:
            return ZoneInfo("UTC")

    def local_now(self) -> datetime:
        return datetime.now(self.tzinfo())

    def local_today(self) -> date:
        return self.local_now().date()

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in {"demo", "production"} else "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
