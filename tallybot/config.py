from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    openrouter_api_key: str = ""
    llm_model: str = "google/gemini-2.0-flash-001"
    ai_enabled: bool = True
    ai_timeout_seconds: float = 5.0
    ai_confidence_threshold: float = 0.7

    telegram_bot_token: str = ""
    allowed_user_ids: list[str] = []

    db_path: str = "tallybot.json"
    log_level: str = "INFO"

    home_currency: str = "ARS"
    decimal_separator: str = ","

    pending_ttl_seconds: int = 300
    sweep_interval_seconds: int = 60
    dedup_ttl_seconds: int = 3600

    rates_ttl_seconds: int = 1800
    rates_timeout_seconds: float = 5.0
    rates_urls: dict[str, str] = {
        "USD": "https://dolarapi.com/v1/dolares/blue",
        "EUR": "https://dolarapi.com/v1/cotizaciones/eur",
        "BRL": "https://dolarapi.com/v1/cotizaciones/brl",
    }
    fallback_rates: dict[str, Decimal] = {
        "USD": Decimal("850"),
        "EUR": Decimal("925"),
        "BRL": Decimal("170"),
    }

    @property
    def oracle_enabled(self) -> bool:
        return self.ai_enabled and bool(self.openrouter_api_key)


@lru_cache
def get_settings() -> Settings:
    return Settings()
