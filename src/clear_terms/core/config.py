from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_fallback_models: list[str] = [
        "gemini-2.0-flash-exp",
        "gemini-2.5-flash",
        "gemini-flash-latest",
    ]
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    provider_timeout_seconds: float = 60.0
    prompt_template_path: Path | None = None

    ledger_backend: Literal["local", "s3", "jsonbin"] = "local"
    ledger_path: Path = Path(".local_storage/users.json")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "clear-terms"
    s3_ledger_key: str = "ledger/users.json"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    jsonbin_id: str | None = None
    jsonbin_key: str | None = None
    jsonbin_base_url: str = "https://api.jsonbin.io/v3"

    ledger_lock_max_attempts: int = 10
    ledger_lock_retry_delay_seconds: float = 0.1
    ledger_lock_stale_seconds: float = 5.0

    initial_credits: int = 20

    max_jobs: int = 1000
    job_max_age_seconds: int = 60 * 60
    job_sweep_interval_seconds: int = 5 * 60

    max_cache_entries: int = 1000
    cache_ttl_seconds: int = 24 * 60 * 60
    cache_sweep_interval_seconds: int = 60 * 60

    min_content_length: int = 300
    max_content_length: int = 500_000
    supported_languages: list[str] = ["fr", "en"]
    default_language: str = "en"

    worker_concurrency: int = 4
    run_jobs_eagerly: bool = False

    @property
    def provider_models(self) -> list[str]:
        models: list[str] = []
        for model in [self.gemini_model, *self.gemini_fallback_models]:
            if model and model not in models:
                models.append(model)
        return models


settings = Settings()
