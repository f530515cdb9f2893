from pathlib import Path

from pydantic_settings import BaseSettings

_KNOWLEDGE_DIR = Path(__file__).resolve().parent / "knowledge"


class Settings(BaseSettings):
    database_url: str = "sqlite:///./orderbot.db"
    debug: bool = False
    log_level: str = "INFO"
    session_backend: str = "memory"  # memory, sql

    max_item_quantity: int = 20
    picker_page_size: int = 10
    idle_reset_minutes: int = 5
    default_currency: str = "SAR"
    tenants_file: str = str(_KNOWLEDGE_DIR / "demo_tenants.yaml")

    catalog_base_url: str | None = None
    catalog_api_key: str | None = None
    catalog_timeout_seconds: float = 5.0

    geocoder_base_url: str = "https://nominatim.openstreetmap.org"
    geocoder_user_agent: str = "orderbot/0.1"
    geocode_timeout_seconds: float = 5.0

    submission_base_url: str | None = None
    submission_api_key: str | None = None
    submission_timeout_seconds: float = 10.0
    submission_max_attempts: int = 2
    submission_retry_backoff_seconds: float = 0.5
    submission_stale_seconds: int = 120

    outbound_base_url: str | None = None
    outbound_timeout_seconds: float = 10.0

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
