from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./hackportal.db"

    # Airtable (system of record)
    airtable_api_key: str = ""
    airtable_base_id: str = ""
    airtable_api_url: str = "https://api.airtable.com/v0"
    airtable_page_size: int = 100  # Airtable caps pageSize at 100
    airtable_timeout_seconds: float = 30.0
    airtable_max_retries: int = 5
    airtable_backoff_base_seconds: float = 0.5
    airtable_backoff_max_seconds: float = 30.0

    # Reconciliation
    sync_tables: List[str] = ["events", "admins", "attendees", "venues"]
    sync_interval_seconds: float = 1.0
    cycle_timeout_seconds: float = 60.0
    incremental_sync: bool = False
    sync_enabled: bool = True  # start the scheduler inside the API process

    cache_ttl_seconds: float = 120.0
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
