from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    gemini_fallback_model: str = "gemini-1.5-flash-8b"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"

    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    groq_fallback_model: str = "llama-3.1-8b-instant"
    groq_base_url: str = "https://api.groq.com/openai/v1"

    default_provider: Literal["gemini", "groq"] = "gemini"
    provider_timeout_seconds: float = 60.0
    provider_max_attempts: int = 3
    rate_limit_delay_seconds: float = 2.0

    database_url: str = "sqlite:///./invoices.db"

    blob_backend: Literal["local", "minio"] = "local"
    blob_local_dir: Path = Path("uploads")
    minio_endpoint: str = "localhost:9000"
    minio_access_key: str = ""
    minio_secret_key: str = ""
    minio_bucket: str = "invoices"
    minio_secure: bool = False

    text_extraction_service_url: str | None = None
    text_extraction_timeout_seconds: float = 45.0
    prefer_single_call_extractor: bool = False

    max_file_size_mb: int = 25
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
