from pathlib import Path

from pydantic_settings import BaseSettings
from pydantic import Field, computed_field


DEFAULT_DISTANCES_PATH = Path(__file__).resolve().parent.parent / "data" / "distances.json"


class Settings(BaseSettings):
    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./rental.db", env="DATABASE_URL")

    # Payment gateway (Konnect)
    konnect_api_url: str = Field(default="https://api.konnect.network/api/v2", env="KONNECT_API_URL")
    konnect_wallet_id: str = Field(default="", env="KONNECT_WALLET_ID")
    konnect_api_key: str = Field(default="", env="KONNECT_API_KEY")
    success_url: str = Field(default="", env="SUCCESS_URL")
    success_url_prolongation: str = Field(default="", env="SUCCESS_URL_PROLONGATION")
    error_url: str = Field(default="", env="ERROR_URL")
    payment_lifespan_minutes: int = Field(default=60, env="PAYMENT_LIFESPAN_MINUTES")

    # Currency: amounts are stored in dinars, the gateway works in millimes
    currency: str = Field(default="TND", env="CURRENCY")
    currency_minor_units: int = Field(default=1000, env="CURRENCY_MINOR_UNITS")

    # Webhook server
    webhook_host: str = Field(default="0.0.0.0", env="WEBHOOK_HOST")
    webhook_port: int = Field(default=8080, env="WEBHOOK_PORT")

    # Daily reservation maintenance
    maintenance_interval_hours: int = Field(default=24, env="MAINTENANCE_INTERVAL_HOURS")

    # Static distance table for transfers
    distances_path: str = Field(default=str(DEFAULT_DISTANCES_PATH), env="DISTANCES_PATH")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    @computed_field
    @property
    def gateway_configured(self) -> bool:
        return bool(self.konnect_api_key and self.konnect_wallet_id)

    class Config:
        # .env.local wins over .env for local development
        env_file = [".env.local", ".env"]
        env_file_encoding = "utf-8"
        extra = "ignore"


# Global settings instance
settings = Settings()
