from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PATHFORGE_",
        extra="ignore",
    )

    app_name: str = "PathForge"
    app_env: str = "development"
    log_level: str = "INFO"

    api_base_url: str = "http://localhost:8000/api/v1"
    api_timeout_sec: float = 30.0
    signin_url: str = "/auth/signin"

    poll_interval_active_sec: float = 2.0
    poll_interval_waiting_sec: float = 5.0
    poll_failure_cap: int = 5
    poll_backoff_base_sec: float = 1.0
    poll_backoff_max_sec: float = 30.0
    poll_timeout_sec: float = 30 * 60

    search_debounce_ms: int = 300
    search_page_size: int = 20

    database_url: str = "sqlite:///./data/pathforge.db"
    data_dir: Path = Path("./data")

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("poll_failure_cap")
    @classmethod
    def validate_failure_cap(cls, value: int) -> int:
        if value < 1:
            raise ValueError("poll_failure_cap must be at least 1")
        return value

    @property
    def search_debounce_sec(self) -> float:
        return self.search_debounce_ms / 1000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
