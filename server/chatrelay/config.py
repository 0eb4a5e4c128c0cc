from functools import lru_cache
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    server_port: int = 8000
    log_level: str = "INFO"
    # Allow both localhost and 127.0.0.1 for local development
    allowed_origins: List[AnyHttpUrl] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]  # type: ignore

    # OpenRouter config
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_http_referer: Optional[str] = None
    openrouter_app_title: Optional[str] = None

    # Models the relay accepts; anything else falls back to default_model
    default_model: str = "openai/gpt-4o-mini"
    allowed_models: List[str] = [
        "openai/gpt-4o-mini",
        "openai/gpt-4o",
        "anthropic/claude-3.5-sonnet",
        "google/gemini-2.0-flash-001",
        "deepseek/deepseek-r1",
        "meta-llama/llama-3.3-70b-instruct",
    ]
    title_model: str = "google/gemini-2.0-flash-lite-001"
    web_search_suffix: str = ":online"
    reasoning_effort: Optional[str] = "high"

    # Storage
    database_url: str = "sqlite+aiosqlite:///./chatrelay.db"
    storage_url: Optional[str] = None
    storage_service_key: Optional[str] = None

    # Identity provider (HS256 bearer tokens)
    auth_jwt_secret: Optional[str] = None
    auth_jwt_audience: Optional[str] = "authenticated"

    # Stream session snapshots
    persist_interval_seconds: float = 1.5
    persist_char_threshold: int = 800

    rate_limit: int = 30
    rate_limit_window_seconds: int = 60
    shutdown_drain_seconds: float = 30.0

    # pydantic-settings v2 style config: load env from both ../.env (repo root) and .env
    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=("../.env", ".env"),
        extra="ignore",  # ignore env vars not defined as fields
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
